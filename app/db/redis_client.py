# app/db/redis_client.py
import redis.asyncio as redis

from app.core.config import settings

# Shared Redis client; connections are opened lazily on first command
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
