import logging
import random
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from app.core.exceptions import (
    AuthenticationError,
    StructuralError,
    TransientNetworkError,
    UnmappedStageError,
)
from app.core.retry import RetryPolicy
from app.schemas.crm import CRMSession, format_remote_datetime
from app.services.crm_session import CRMSessionManager

logger = logging.getLogger(__name__)

# Remote collections
LEAD_MODEL = "crm.lead"
STAGE_MODEL = "crm.stage"
SOURCE_MODEL = "utm.source"
CALENDAR_MODEL = "calendar.event"

# Remote errors that mean the session (not the request) is bad
_SESSION_ERROR_NAMES = ("SessionExpiredException", "AccessDenied")


def remote_id(external_id: Any) -> int:
    try:
        return int(external_id)
    except (TypeError, ValueError):
        raise StructuralError(f"Invalid remote record id: {external_id!r}")


class CRMClient:
    """
        Typed remote-procedure calls against the external CRM.

        Every call ensures a valid session, is sent with a bounded timeout and
        is retried by the RetryPolicy on transient failures only:
          - timeouts, transport errors, HTTP 5xx  -> TransientNetworkError (retried)
          - HTTP 401/403, session/access errors   -> AuthenticationError (session dropped)
          - malformed payloads, remote app errors -> StructuralError
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        sessions: CRMSessionManager,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        default_source: str = "Website",
        default_stage: str = "New Lead",
        stage_fallback_to_first: bool = False,
    ):
        self._http = http
        self.sessions = sessions
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.default_source = default_source
        self.default_stage = default_stage
        self.stage_fallback_to_first = stage_fallback_to_first
        self._stage_ids: Dict[str, int] = {}

    # --- Transport ---

    async def call_kw(
        self,
        model: str,
        method: str,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await self.retry_policy.run(self._call_kw_once, model, method, args or [], kwargs or {})

    async def _call_kw_once(self, model: str, method: str, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        session = await self.sessions.ensure_authenticated()
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {
                "service": "object",
                "method": "execute_kw",
                "args": [
                    *self.sessions.rpc_credentials(session),
                    model,
                    method,
                    args,
                    kwargs,
                ],
            },
            "id": random.randint(1, 1_000_000),
        }

        try:
            response = await self._http.post(
                f"{self.sessions.base_url}/jsonrpc",
                json=payload,
                headers={"Cookie": f"session_id={session.session_id}"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{model}.{method} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{model}.{method} transport error: {e}") from e

        if response.status_code in (401, 403):
            self.sessions.invalidate(session)
            raise AuthenticationError(f"CRM rejected the session (HTTP {response.status_code})")
        if response.status_code >= 500:
            raise TransientNetworkError(f"{model}.{method} failed: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise StructuralError(f"{model}.{method} failed: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise StructuralError(f"{model}.{method} returned a malformed response") from e
        if not isinstance(data, dict):
            raise StructuralError(f"{model}.{method} returned a malformed response")

        error = data.get("error")
        if error:
            self._raise_remote_error(model, method, error, session)
        if "result" not in data:
            raise StructuralError(f"{model}.{method} response has no result")
        return data["result"]

    def _raise_remote_error(self, model: str, method: str, error: Dict[str, Any], session: CRMSession) -> None:
        details = error.get("data") or {}
        message = details.get("message") or error.get("message") or "Unknown CRM error"
        name = details.get("name") or ""
        logger.error("CRM API error (%s.%s): %s", model, method, message)
        if error.get("code") == 100 or any(n in name for n in _SESSION_ERROR_NAMES):
            self.sessions.invalidate(session)
            raise AuthenticationError(f"CRM session rejected: {message}")
        raise StructuralError(message, remote_code=error.get("code"))

    # --- Generic calls ---

    async def create(self, model: str, values: Dict[str, Any]) -> int:
        return await self.call_kw(model, "create", [values])

    async def search(self, model: str, domain: List[Any], limit: Optional[int] = None) -> List[int]:
        kwargs = {"limit": limit} if limit else {}
        return await self.call_kw(model, "search", [domain], kwargs)

    async def search_read(
        self,
        model: str,
        domain: List[Any],
        fields: Optional[List[str]] = None,
        limit: Optional[int] = None,
        order: Optional[str] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {}
        if fields:
            kwargs["fields"] = fields
        if limit:
            kwargs["limit"] = limit
        if offset:
            kwargs["offset"] = offset
        if order:
            kwargs["order"] = order
        records = await self.call_kw(model, "search_read", [domain], kwargs)
        if not isinstance(records, list):
            raise StructuralError(f"{model}.search_read did not return a list")
        return records

    async def write(self, model: str, ids: List[int], values: Dict[str, Any]) -> bool:
        return await self.call_kw(model, "write", [ids, values])

    # --- Leads ---

    async def search_leads(
        self,
        domain: List[Any],
        fields: Optional[List[str]] = None,
        limit: Optional[int] = None,
        order: Optional[str] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        return await self.search_read(LEAD_MODEL, domain, fields=fields, limit=limit, order=order, offset=offset)

    async def search_leads_modified_since(
        self, watermark: datetime, fields: List[str], limit: int, offset: int = 0
    ) -> List[Dict[str, Any]]:
        """One page of leads written after the watermark, oldest write first."""
        domain = [["write_date", ">", format_remote_datetime(watermark)]]
        return await self.search_leads(domain, fields=fields, limit=limit, order="write_date asc, id asc", offset=offset)

    async def get_lead_description(self, external_id: Any) -> str:
        records = await self.search_leads(
            [["id", "=", remote_id(external_id)]], fields=["description"], limit=1
        )
        if not records:
            return ""
        return records[0].get("description") or ""

    async def create_lead(self, values: Dict[str, Any]) -> int:
        lead_id = await self.create(LEAD_MODEL, values)
        logger.info("Lead created in CRM (id %s)", lead_id)
        return lead_id

    async def update_lead(self, external_id: Any, values: Dict[str, Any]) -> bool:
        return await self.write(LEAD_MODEL, [remote_id(external_id)], values)

    # --- Supporting lookups ---

    async def get_or_create_source(self, source_name: str) -> int:
        """Idempotent lookup-or-create of a source tag."""
        source_ids = await self.search(SOURCE_MODEL, [["name", "=", source_name]], limit=1)
        if source_ids:
            return source_ids[0]
        logger.debug("Creating new CRM source: %s", source_name)
        return await self.create(SOURCE_MODEL, {"name": source_name})

    async def get_stage_id(self, stage_name: str) -> int:
        """
        Resolve a pipeline stage name to its id.

        Unknown names raise UnmappedStageError unless `stage_fallback_to_first`
        is enabled, in which case the first stage by sequence is used.
        """
        if stage_name in self._stage_ids:
            return self._stage_ids[stage_name]

        stages = await self.search_read(STAGE_MODEL, [["name", "=", stage_name]], fields=["id"], limit=1)
        if stages:
            self._stage_ids[stage_name] = stages[0]["id"]
            return stages[0]["id"]

        if not self.stage_fallback_to_first:
            raise UnmappedStageError(stage_name)

        logger.warning('Stage "%s" not found, using first stage', stage_name)
        first = await self.search_read(STAGE_MODEL, [], fields=["id"], limit=1, order="sequence")
        if not first:
            raise UnmappedStageError(stage_name)
        return first[0]["id"]

    async def create_calendar_event(
        self,
        name: str,
        start: datetime,
        stop: datetime,
        description: Optional[str] = None,
        opportunity_id: Optional[Any] = None,
    ) -> int:
        values: Dict[str, Any] = {
            "name": name,
            "start": format_remote_datetime(start),
            "stop": format_remote_datetime(stop),
            "description": description or "",
        }
        if opportunity_id is not None:
            values["opportunity_id"] = remote_id(opportunity_id)
        event_id = await self.create(CALENDAR_MODEL, values)
        logger.info("Calendar event created in CRM (id %s)", event_id)
        return event_id

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.sessions.ensure_authenticated()
            await self.search_read(LEAD_MODEL, [], fields=["id"], limit=1)
        except (AuthenticationError, TransientNetworkError, StructuralError) as e:
            return {"success": False, "error": e.message}
        return {
            "success": True,
            "authenticated": True,
            "database": self.sessions.database,
            "url": self.sessions.base_url,
        }
