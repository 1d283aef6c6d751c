"""
Redis mirror of active sessions.

KEY LAYOUT
==========

  {prefix}:{session_id}          JSON session record          TTL = token lifetime
  {prefix}:token:{token_hash}    session_id (secondary index) TTL = token lifetime
  {prefix}:user:{user_id}        SET of session ids           TTL refreshed to the
                                                              longest member

The mirror is an accelerator for session lookups, never the authorization
gate: expiry is left to Redis TTL eviction, and any Redis failure is logged
and swallowed so the durable session table stays the source of truth.

Why a SET per user:
  Password reset has to log a user out everywhere. Without a per-user index
  that would need a SCAN over the whole keyspace; with it, it is one
  SMEMBERS plus a DELETE.
"""

import json
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ticketflow.core.config import get_settings
from ticketflow.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled or down."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await client.ping()
            _redis_client = client
            logger.info("redis_connected")
        except (RedisError, OSError) as e:
            logger.error("redis_connection_failed", error=str(e))
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


class SessionMirror:
    """Best-effort projection of durable sessions into Redis."""

    def __init__(self, client: Optional[redis.Redis], prefix: str = "session"):
        self._client = client
        self._prefix = prefix

    def _session_key(self, session_id: str) -> str:
        return f"{self._prefix}:{session_id}"

    def _token_key(self, token_hash: str) -> str:
        return f"{self._prefix}:token:{token_hash}"

    def _user_key(self, user_id: int) -> str:
        return f"{self._prefix}:user:{user_id}"

    async def save(
        self,
        *,
        session_id: str,
        user_id: int,
        token_hash: str,
        ttl_seconds: int,
        email: str,
        first_name: str,
        last_name: str,
        email_verified: bool,
        device_info: Optional[str],
        ip_address: Optional[str],
        login_time: datetime,
        expires_at: datetime,
    ) -> bool:
        if self._client is None or ttl_seconds <= 0:
            return False

        record = {
            "session_id": session_id,
            "user_id": user_id,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "email_verified": email_verified,
            "token_hash": token_hash,
            "device_info": device_info,
            "ip_address": ip_address,
            "login_time": login_time.isoformat(),
            "expires_at": expires_at.isoformat(),
        }
        user_key = self._user_key(user_id)
        try:
            # The index set must outlive its longest-lived member
            current_ttl = await self._client.ttl(user_key)
            index_ttl = max(ttl_seconds, current_ttl)
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.setex(self._session_key(session_id), ttl_seconds, json.dumps(record))
                pipe.setex(self._token_key(token_hash), ttl_seconds, session_id)
                pipe.sadd(user_key, session_id)
                pipe.expire(user_key, index_ttl)
                await pipe.execute()
            logger.debug("session_mirror_saved", session_id=session_id, ttl=ttl_seconds)
            return True
        except RedisError as e:
            logger.error("session_mirror_save_error", session_id=session_id, error=str(e))
            return False

    async def find_by_token_hash(self, token_hash: str) -> Optional[dict]:
        if self._client is None:
            return None
        try:
            session_id = await self._client.get(self._token_key(token_hash))
            if not session_id:
                return None
            raw = await self._client.get(self._session_key(session_id))
            return json.loads(raw) if raw else None
        except RedisError as e:
            logger.error("session_mirror_get_error", error=str(e))
            return None

    async def find_by_user_id(self, user_id: int) -> list[dict]:
        if self._client is None:
            return []
        try:
            session_ids = await self._client.smembers(self._user_key(user_id))
            if not session_ids:
                return []
            raws = await self._client.mget([self._session_key(sid) for sid in session_ids])
            return [json.loads(raw) for raw in raws if raw]
        except RedisError as e:
            logger.error("session_mirror_get_error", user_id=user_id, error=str(e))
            return []

    async def delete_by_token_hash(self, token_hash: str) -> bool:
        """Remove one mirrored session. Missing entries are not an error."""
        if self._client is None:
            return False
        try:
            session_id = await self._client.get(self._token_key(token_hash))
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(self._token_key(token_hash))
                if session_id:
                    raw = await self._client.get(self._session_key(session_id))
                    pipe.delete(self._session_key(session_id))
                    if raw:
                        pipe.srem(self._user_key(json.loads(raw)["user_id"]), session_id)
                await pipe.execute()
            return bool(session_id)
        except RedisError as e:
            logger.error("session_mirror_delete_error", error=str(e))
            return False

    async def delete_by_user_id(self, user_id: int) -> int:
        """Remove every mirrored session for a user; returns how many were found."""
        if self._client is None:
            return 0
        user_key = self._user_key(user_id)
        try:
            session_ids = await self._client.smembers(user_key)
            keys = [user_key]
            for session_id in session_ids:
                raw = await self._client.get(self._session_key(session_id))
                keys.append(self._session_key(session_id))
                if raw:
                    keys.append(self._token_key(json.loads(raw)["token_hash"]))
            await self._client.delete(*keys)
            logger.info("session_mirror_cleared", user_id=user_id, sessions=len(session_ids))
            return len(session_ids)
        except RedisError as e:
            logger.error("session_mirror_delete_error", user_id=user_id, error=str(e))
            return 0
