"""Error taxonomy for the lead lifecycle engine and CRM synchronization.

Local lead operations raise these directly. CRM errors are raised by the RPC
client; the sync engine turns them into recorded failures where it can.
"""

from typing import Any, Optional


class LeadManagementError(Exception):
    """Base class for every domain error raised by this service."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ValidationError(LeadManagementError):
    """Malformed input to a lead or viewing operation. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details={"field": field} if field else None,
        )


class NotFoundError(LeadManagementError):
    """Referenced lead or viewing does not exist."""

    def __init__(self, resource: str, resource_id: Any) -> None:
        super().__init__(
            message=f"{resource} {resource_id} not found",
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource, "resource_id": str(resource_id)},
        )


class StateError(LeadManagementError):
    """Operation is not valid for the entity's current state."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_STATE", status_code=409)


# --- CRM ---

class CRMError(LeadManagementError):
    """Base class for failures talking to the external CRM."""

    def __init__(self, message: str, code: str = "CRM_ERROR", status_code: int = 502) -> None:
        super().__init__(message=message, code=code, status_code=status_code)


class AuthenticationError(CRMError):
    """CRM login failed or the session was rejected."""

    def __init__(self, message: str = "CRM authentication failed") -> None:
        super().__init__(message=message, code="CRM_AUTHENTICATION_ERROR")


class TransientNetworkError(CRMError):
    """Timeout, transport failure or 5xx from the CRM. Eligible for retry."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CRM_TRANSIENT_ERROR", status_code=503)


class StructuralError(CRMError):
    """Malformed response or an application-level error reported by the CRM."""

    def __init__(self, message: str, remote_code: Optional[Any] = None) -> None:
        super().__init__(message=message, code="CRM_STRUCTURAL_ERROR")
        self.remote_code = remote_code


class UnmappedStageError(CRMError):
    """A pipeline stage name has no matching stage record in the CRM."""

    def __init__(self, stage_name: str) -> None:
        super().__init__(
            message=f'Stage "{stage_name}" does not exist in the CRM',
            code="CRM_UNMAPPED_STAGE",
        )
        self.stage_name = stage_name


class SyncRunFailedError(LeadManagementError):
    """A sync run could not get started and was recorded as failed."""

    def __init__(self, sync_run_id: Any, message: str) -> None:
        super().__init__(
            message=f"Sync run failed: {message}",
            code="SYNC_RUN_FAILED",
            status_code=502,
            details={"sync_run_id": str(sync_run_id)},
        )
        self.sync_run_id = sync_run_id
