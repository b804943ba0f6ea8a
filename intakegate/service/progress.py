"""Progress document merge and the write-through progress cache.

Merge contract: maps merge recursively, every other value (arrays included)
replaces what was there. Concurrent updates to one session are serialized by
a short Redis lock when a cache is configured and always by the store's
version compare-and-set, re-merging on conflict. Two writers touching
different fields both land; two writers touching the same field resolve to
the last committed write.

The store row is read first on every update and read, since its version is
the compare-and-set token and its status and expiry gate the write. The
cache only stands in for the progress document, and only when its entry
carries that same version; anything else is a miss.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from intakegate.config import Settings
from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.errors import ConflictError, NotFoundError, ValidationError
from intakegate.service.state_machine import (
    ensure_writable,
    extended_expiry,
    plan_transition,
    record_transition,
)
from intakegate.storage.common import SessionStore
from intakegate.storage.errors import CacheTimeout
from intakegate.storage.models import (
    AuditAction,
    RequestActor,
    Session,
    SessionStatus,
    utcnow,
)

logger = get_logger(__name__)

MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000
MAX_CAS_ATTEMPTS = 8
_LOCK_POLL_SECONDS = 0.02


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Return ``base`` with ``patch`` merged in; neither input is modified."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def touched_fields(patch: Mapping[str, Any], prefix: str = "") -> List[str]:
    """Dotted paths of the leaves a patch writes; never the values."""
    paths: List[str] = []
    for key, value in patch.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            paths.extend(touched_fields(value, prefix=f"{path}."))
        else:
            paths.append(path)
    return sorted(paths)


def _check_shape(value: Any, depth: int = 0) -> None:
    if depth > MAX_JSON_DEPTH:
        raise ValidationError(
            "progress nesting too deep", detail={"max_depth": MAX_JSON_DEPTH}
        )
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError("progress keys must be strings")
            _check_shape(item, depth + 1)
    elif isinstance(value, list):
        if len(value) > MAX_ARRAY_ITEMS:
            raise ValidationError(
                "progress array too large", detail={"max_items": MAX_ARRAY_ITEMS}
            )
        for item in value:
            _check_shape(item, depth + 1)
    elif value is not None and not isinstance(value, (str, int, float, bool)):
        raise ValidationError("progress values must be JSON")


def validate_patch(patch: Any) -> Dict[str, Any]:
    if not isinstance(patch, dict):
        raise ValidationError("progress patch must be an object")
    if not patch:
        raise ValidationError("progress patch must not be empty")
    _check_shape(patch)
    if "currentStep" in patch:
        step = patch["currentStep"]
        if not isinstance(step, str) or not step.strip():
            raise ValidationError(
                "currentStep must be a non-empty string", detail={"field": "currentStep"}
            )
    if "completedSteps" in patch and not isinstance(patch["completedSteps"], list):
        raise ValidationError(
            "completedSteps must be a list", detail={"field": "completedSteps"}
        )
    return patch


class ProgressService:
    def __init__(
        self,
        store: SessionStore,
        audit: AuditService,
        cache,
        settings: Settings,
    ) -> None:
        self.store = store
        self.audit = audit
        self.cache = cache
        self.cache_ttl_seconds = settings.progress_cache_ttl_seconds
        self.lock_ttl_ms = settings.progress_lock_ttl_seconds * 1000
        self.activity_window = timedelta(minutes=settings.activity_window_minutes)

    async def _cache_get(self, session: Session) -> Optional[Dict[str, Any]]:
        if not self.cache:
            return None
        try:
            cached = await self.cache.get_progress(session.id)
        except CacheTimeout:
            logger.warning("progress_cache_read_timeout", session_id=session.id)
            return None
        if cached is None:
            return None
        version, progress = cached
        # A cached copy older than the committed row is ignored
        return progress if version == session.version else None

    async def _cache_put(self, session: Session) -> None:
        if not self.cache:
            return
        try:
            await self.cache.set_progress(
                session.id, session.version, session.progress, self.cache_ttl_seconds
            )
        except CacheTimeout:
            logger.warning("progress_cache_write_timeout", session_id=session.id)

    async def invalidate(self, session_id: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.delete_progress(session_id)
        except CacheTimeout:
            logger.warning("progress_cache_delete_timeout", session_id=session_id)

    async def read_through(self, session: Session) -> Session:
        """Fill ``session.progress`` from the cache, populating it on a miss."""
        cached = await self._cache_get(session)
        if cached is not None:
            session.progress = cached
            return session
        await self._cache_put(session)
        return session

    @contextlib.asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        token: Optional[str] = None
        if self.cache:
            deadline = asyncio.get_running_loop().time() + self.lock_ttl_ms / 1000
            while token is None:
                token = await self.cache.acquire_session_lock(session_id, self.lock_ttl_ms)
                if token is None:
                    if asyncio.get_running_loop().time() >= deadline:
                        # Fall back to compare-and-set alone
                        logger.info("progress_lock_wait_exceeded", session_id=session_id)
                        break
                    await asyncio.sleep(_LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            if token is not None:
                try:
                    await self.cache.release_session_lock(session_id, token)
                except CacheTimeout:
                    # The lock expires on its own after lock_ttl
                    logger.warning("progress_lock_release_timeout", session_id=session_id)

    async def update_progress(
        self,
        session_id: str,
        patch: Any,
        *,
        actor: Optional[RequestActor] = None,
    ) -> Session:
        patch = validate_patch(patch)
        async with self._session_lock(session_id):
            for attempt in range(MAX_CAS_ATTEMPTS):
                session = self.store.get_session(session_id)
                if session is None:
                    raise NotFoundError("session not found")
                now = utcnow()
                ensure_writable(session, now)
                current = await self._cache_get(session)
                if current is None:
                    current = session.progress
                changes: Dict[str, Any] = {
                    "progress": deep_merge(current, patch),
                    "updated_at": now,
                    "expires_at": extended_expiry(session, now, self.activity_window),
                }
                first_update = session.status == SessionStatus.STARTED
                if first_update:
                    changes.update(
                        plan_transition(
                            session,
                            SessionStatus.IN_PROGRESS,
                            now=now,
                            activity_window=self.activity_window,
                        )
                    )
                updated = self.store.update_session_if_version(
                    session.id, session.version, changes
                )
                if updated is None:
                    logger.debug("progress_update_retry", session_id=session_id, attempt=attempt)
                    continue
                await self._cache_put(updated)
                if first_update:
                    record_transition(
                        self.audit,
                        updated.id,
                        session.status,
                        SessionStatus.IN_PROGRESS,
                        actor=actor,
                        details={"trigger": "first_progress_update"},
                    )
                self.audit.record(
                    AuditAction.PROGRESS_UPDATED,
                    session_id=updated.id,
                    details={"fields": touched_fields(patch), "version": updated.version},
                    actor=actor,
                )
                return updated
        logger.warning("progress_update_conflict", session_id=session_id)
        raise ConflictError("session was modified concurrently")
