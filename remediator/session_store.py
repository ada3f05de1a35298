"""
Session persistence for Cluster Remediator.

A session is always read and written whole. Two backends:

- ``FileSessionStore``: one JSON file per session, written to a temp file in
  the same directory, fsynced and renamed into place.
- ``RedisSessionStore``: one key per session, ``SET`` with a TTL.

Unlike a cache, the store is the source of truth for in-flight sessions, so
backend failures raise InfrastructureUnavailable instead of degrading.
"""

import asyncio
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from .config import settings
from .errors import InfrastructureUnavailable
from .models import InvestigationSession

logger = structlog.get_logger(__name__)

KEY_SESSION_PREFIX = "remediator:session:"

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def _check_id(session_id: str) -> str:
    if not _SESSION_ID_RE.match(session_id) or session_id in (".", ".."):
        raise ValueError(f"invalid session id: {session_id!r}")
    return session_id


class SessionStore:
    """Interface shared by the storage backends."""

    async def connect(self):
        pass

    async def close(self):
        pass

    async def get(self, session_id: str) -> Optional[InvestigationSession]:
        raise NotImplementedError

    async def put(self, session: InvestigationSession) -> None:
        raise NotImplementedError


class FileSessionStore(SessionStore):
    """Stores sessions as ``<dir>/<id>.json``."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{_check_id(session_id)}.json"

    def _read(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, path: Path, payload: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    async def get(self, session_id: str) -> Optional[InvestigationSession]:
        path = self._path(session_id)
        try:
            raw = await asyncio.to_thread(self._read, path)
        except OSError as exc:
            logger.error("Session read failed", session_id=session_id, error=str(exc))
            raise InfrastructureUnavailable(f"session store unreadable: {exc}") from exc
        if raw is None:
            return None
        try:
            return InvestigationSession.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("Session file corrupt", session_id=session_id, error=str(exc))
            raise InfrastructureUnavailable(f"session {session_id} is corrupt") from exc

    async def put(self, session: InvestigationSession) -> None:
        session.touch()
        path = self._path(session.id)
        payload = session.model_dump_json(by_alias=True, indent=2)
        try:
            await asyncio.to_thread(self._write, path, payload)
        except OSError as exc:
            logger.error("Session write failed", session_id=session.id, error=str(exc))
            raise InfrastructureUnavailable(f"session store unwritable: {exc}") from exc
        logger.debug("Session saved", session_id=session.id, status=session.status.value)


class RedisSessionStore(SessionStore):
    """Stores sessions under ``remediator:session:<id>`` with a TTL."""

    def __init__(self, url: str, ttl_seconds: int = 604800):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self):
        """Establish the Redis connection."""
        if self._redis is not None:
            return
        try:
            self._redis = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await self._redis.ping()
            logger.info("Redis connected", url=self.url)
        except (aioredis.RedisError, OSError) as exc:
            self._redis = None
            logger.error("Redis unavailable", url=self.url, error=str(exc))
            raise InfrastructureUnavailable(f"redis unavailable: {exc}") from exc

    async def close(self):
        """Close the Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def _client(self) -> aioredis.Redis:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def get(self, session_id: str) -> Optional[InvestigationSession]:
        key = KEY_SESSION_PREFIX + _check_id(session_id)
        client = await self._client()
        try:
            raw = await client.get(key)
        except (aioredis.RedisError, OSError) as exc:
            logger.error("Redis get failed", session_id=session_id, error=str(exc))
            raise InfrastructureUnavailable(f"redis get failed: {exc}") from exc
        if raw is None:
            return None
        try:
            return InvestigationSession.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("Stored session corrupt", session_id=session_id, error=str(exc))
            raise InfrastructureUnavailable(f"session {session_id} is corrupt") from exc

    async def put(self, session: InvestigationSession) -> None:
        session.touch()
        key = KEY_SESSION_PREFIX + _check_id(session.id)
        client = await self._client()
        try:
            await client.set(key, session.model_dump_json(by_alias=True), ex=self.ttl_seconds)
        except (aioredis.RedisError, OSError) as exc:
            logger.error("Redis set failed", session_id=session.id, error=str(exc))
            raise InfrastructureUnavailable(f"redis set failed: {exc}") from exc


# Global instance
_session_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    """Get or create the configured session store singleton."""
    global _session_store
    if _session_store is None:
        backend = settings.session_backend.lower()
        if backend == "redis":
            _session_store = RedisSessionStore(settings.redis_url, settings.session_ttl_seconds)
        elif backend == "file":
            _session_store = FileSessionStore(settings.session_dir)
        else:
            raise ValueError(f"Unsupported session backend: {backend}. Supported: file, redis")
    return _session_store
