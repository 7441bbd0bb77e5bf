"""Leases that keep two workers off the same content item at the same time."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

from ai_workflow.storage.common import utc_now
from ai_workflow.workflow.models import JobType, LeaseHandle

if TYPE_CHECKING:
    from ai_workflow.workflow.repository import WorkflowRepository

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL_SECONDS = 300

# Stage of both lifecycle job types: one writer of item status and metadata at a time.
LIFECYCLE_LEASE_STAGE = "content"


def lease_stage(job_type: JobType) -> str:
    return LIFECYCLE_LEASE_STAGE if job_type.is_lifecycle else job_type.value


class LeaseStore(Protocol):
    def acquire(self, *, key: str, ttl_seconds: int, owner: str) -> LeaseHandle | None: ...

    def release(self, handle: LeaseHandle) -> bool: ...

    def renew(self, handle: LeaseHandle, *, ttl_seconds: int) -> datetime | None: ...


class SqlLeaseStore:
    """Leases persisted in the ``work_leases`` table; shared by every worker process."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    def acquire(self, *, key: str, ttl_seconds: int, owner: str) -> LeaseHandle | None:
        return self.repository.acquire_lease(key=key, ttl_seconds=ttl_seconds, owner=owner)

    def release(self, handle: LeaseHandle) -> bool:
        return self.repository.release_lease(handle)

    def renew(self, handle: LeaseHandle, *, ttl_seconds: int) -> datetime | None:
        return self.repository.renew_lease(handle, ttl_seconds=ttl_seconds)


class InMemoryLeaseStore:
    """Thread-safe lease store for a single process."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._leases: dict[str, LeaseHandle] = {}

    def acquire(self, *, key: str, ttl_seconds: int, owner: str) -> LeaseHandle | None:
        now = self._clock()
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current.expires_at > now:
                return None
            handle = LeaseHandle(
                key=key,
                token=uuid4().hex,
                owner=owner,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            self._leases[key] = handle
            return handle

    def release(self, handle: LeaseHandle) -> bool:
        with self._lock:
            current = self._leases.get(handle.key)
            if current is None or current.token != handle.token:
                return False
            del self._leases[handle.key]
            return True

    def renew(self, handle: LeaseHandle, *, ttl_seconds: int) -> datetime | None:
        with self._lock:
            current = self._leases.get(handle.key)
            if current is None or current.token != handle.token:
                return None
            current.expires_at = self._clock() + timedelta(seconds=ttl_seconds)
            return current.expires_at


class DuplicateWorkGuard:
    """At most one holder per ``(stage, content_item_id)`` at a time.

    Lifecycle jobs use the shared ``content`` stage (see ``lease_stage``).
    """

    def __init__(
        self,
        store: LeaseStore,
        *,
        ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
        owner: str | None = None,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.owner = owner or f"guard-{uuid4().hex[:8]}"

    @staticmethod
    def lease_key(stage: str, content_item_id: str) -> str:
        return f"{stage}:{content_item_id}"

    def try_acquire(
        self,
        stage: str,
        content_item_id: str,
        *,
        owner: str | None = None,
    ) -> LeaseHandle | None:
        key = self.lease_key(stage, content_item_id)
        handle = self.store.acquire(
            key=key,
            ttl_seconds=self.ttl_seconds,
            owner=owner or self.owner,
        )
        if handle is None:
            logger.warning("Lease %s is held by another worker", key)
        return handle

    def release(self, handle: LeaseHandle) -> bool:
        released = self.store.release(handle)
        if not released:
            logger.warning("Lease %s was already expired or taken over", handle.key)
        return released

    def renew(self, handle: LeaseHandle) -> bool:
        """Push the expiry of a held lease ``ttl_seconds`` past now."""

        expires_at = self.store.renew(handle, ttl_seconds=self.ttl_seconds)
        if expires_at is None:
            logger.warning("Lease %s was lost before it could be renewed", handle.key)
            return False
        handle.expires_at = expires_at
        return True

    @contextmanager
    def hold(
        self,
        stage: str,
        content_item_id: str,
        *,
        owner: str | None = None,
    ) -> Iterator[LeaseHandle | None]:
        """Yield a lease (or ``None`` on contention) and always release it."""

        handle = self.try_acquire(stage, content_item_id, owner=owner)
        try:
            yield handle
        finally:
            if handle is not None:
                self.release(handle)
