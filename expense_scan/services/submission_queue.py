"""Durable queue of receipt submissions made while the device cannot reach the services.

The whole entry list lives as one JSON document in a key-value store. Every read-modify-write
goes through `_mutate`, which holds the queue lock, and drains are serialized by a second lock
so maintenance never races an in-flight attempt.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import httpx
from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from expense_scan.core.config import settings
from expense_scan.services.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermanentServiceError,
    ValidationError,
)
from expense_scan.services.storage import KeyValueStore

logger = logging.getLogger(__name__)


class QueuePriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER = {QueuePriority.HIGH: 0, QueuePriority.MEDIUM: 1, QueuePriority.LOW: 2}


class EntryStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    EntryStatus.PENDING: {EntryStatus.UPLOADING},
    EntryStatus.UPLOADING: {EntryStatus.COMPLETED, EntryStatus.FAILED},
    EntryStatus.FAILED: {EntryStatus.UPLOADING},
    EntryStatus.COMPLETED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueEntry(BaseModel):
    id: str
    image_ref: str
    couple_id: str
    user_id: str
    priority: QueuePriority = QueuePriority.MEDIUM
    status: EntryStatus = EntryStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime
    last_error: Optional[str] = None

    def move_to(self, status: EntryStatus, now: datetime) -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Queue entry {self.id}: {self.status.value} -> {status.value} is not allowed"
            )
        self.status = status
        self.updated_at = now


class SubmissionResult(BaseModel):
    uploaded: bool = True
    result: Any = None


class DrainReport(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    message: Optional[str] = None


class RetryReport(BaseModel):
    retried: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0


class QueueStatus(BaseModel):
    total: int = 0
    pending: int = 0
    uploading: int = 0
    failed: int = 0
    completed: int = 0
    total_attempts: Optional[int] = None
    average_attempts: Optional[float] = None
    average_wait_seconds: Optional[float] = None


_ENTRIES = TypeAdapter(list[QueueEntry])

Processor = Callable[[QueueEntry], Awaitable[Any]]
Listener = Callable[[bool, bool], Awaitable[None]]


def exponential_backoff(retry_count: int, base: float | None = None) -> float:
    base = settings.QUEUE_BACKOFF_BASE_SECONDS if base is None else base
    return base * 2 ** retry_count


class ConnectivityMonitor:
    """Online/offline state with change listeners.

    Listeners receive `(was_online, online)` and are awaited in subscription order.
    """

    def __init__(
        self,
        online: bool = True,
        probe_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._online = online
        self._listeners: list[Listener] = []
        self.probe_url = probe_url or settings.CONNECTIVITY_PROBE_URL
        self.timeout = settings.CONNECTIVITY_PROBE_TIMEOUT_SECONDS if timeout is None else timeout
        self._transport = transport

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if was_online == online:
            return
        logger.info("connectivity changed online=%s", online)
        for listener in list(self._listeners):
            await listener(was_online, online)

    async def refresh(self) -> bool:
        # any HTTP answer, even 401, proves the network path works
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                await client.head(self.probe_url)
            online = True
        except httpx.HTTPError as e:
            logger.info("connectivity probe failed url=%s: %s", self.probe_url, e)
            online = False
        await self.set_online(online)
        return online


class SubmissionQueue:
    def __init__(
        self,
        storage: KeyValueStore,
        processor: Processor,
        connectivity: ConnectivityMonitor | None = None,
        max_retries: int | None = None,
        max_age: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        backoff: Callable[[int], float] = exponential_backoff,
        storage_key: str | None = None,
    ):
        self.storage = storage
        self.processor = processor
        self.connectivity = connectivity or ConnectivityMonitor()
        self.max_retries = settings.QUEUE_MAX_RETRIES if max_retries is None else max_retries
        self.max_age = max_age or timedelta(days=settings.QUEUE_MAX_AGE_DAYS)
        self.storage_key = storage_key or settings.QUEUE_STORAGE_KEY
        self._clock = clock
        self._sleep = sleep
        self._backoff = backoff
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._unsubscribe: Callable[[], None] | None = None

    # storage

    async def _load(self) -> list[QueueEntry]:
        raw = await self.storage.get_item(self.storage_key)
        if not raw:
            return []
        try:
            return _ENTRIES.validate_json(raw)
        except PydanticValidationError as e:
            logger.error("queue key=%s is corrupt, resetting: %s", self.storage_key, e)
            await self.storage.set_item(self.storage_key, "[]")
            return []

    async def _save(self, entries: list[QueueEntry]) -> None:
        await self.storage.set_item(self.storage_key, _ENTRIES.dump_json(entries).decode("utf-8"))

    async def _mutate(self, fn: Callable[[list[QueueEntry]], Any]) -> Any:
        async with self._lock:
            entries = await self._load()
            result = fn(entries)
            await self._save(entries)
            return result

    # connectivity

    def attach(self, monitor: ConnectivityMonitor) -> None:
        """Drain automatically whenever `monitor` reports an offline to online transition."""
        if self._unsubscribe is not None:
            self._unsubscribe()
        self.connectivity = monitor

        async def on_change(was_online: bool, online: bool) -> None:
            if online and not was_online:
                report = await self.drain()
                logger.info(
                    "back online, drained processed=%s successful=%s failed=%s",
                    report.processed, report.successful, report.failed,
                )

        self._unsubscribe = monitor.subscribe(on_change)

    # operations

    async def submit(
        self,
        image_ref: str,
        couple_id: str,
        user_id: str,
        priority: str | QueuePriority = QueuePriority.MEDIUM,
    ) -> SubmissionResult | QueueEntry:
        if not image_ref or not str(image_ref).strip():
            raise ValidationError("Invalid image reference")
        if not couple_id or not user_id:
            raise ValidationError("Missing required fields: coupleId, userId")
        try:
            priority = QueuePriority(priority)
        except ValueError as e:
            raise ValidationError(f"Unknown priority: {priority}") from e

        now = self._clock()
        entry = QueueEntry(
            id=uuid4().hex,
            image_ref=image_ref.strip(),
            couple_id=couple_id,
            user_id=user_id,
            priority=priority,
            created_at=now,
            updated_at=now,
        )

        if self.connectivity.is_online():
            try:
                result = await self.processor(entry)
                return SubmissionResult(uploaded=True, result=result)
            except ValidationError:
                raise
            except Exception as e:
                logger.warning("immediate upload failed, queuing entry=%s: %s", entry.id, e)
                entry.last_error = str(e)

        await self._mutate(lambda entries: entries.append(entry))
        logger.info("queued entry=%s priority=%s", entry.id, entry.priority.value)
        return entry

    async def _maintain(self) -> None:
        now = self._clock()
        cutoff = now - self.max_age

        def maintain(entries: list[QueueEntry]) -> None:
            expired = [e for e in entries if e.created_at < cutoff]
            for e in expired:
                entries.remove(e)
                logger.info("purged expired entry=%s age=%s", e.id, now - e.created_at)
            for e in entries:
                if e.status == EntryStatus.UPLOADING:
                    # an attempt was cancelled or the process died mid-upload
                    e.move_to(EntryStatus.FAILED, now)
                    e.retry_count = min(e.retry_count + 1, self.max_retries)
                    e.last_error = e.last_error or "Upload interrupted"
                    logger.warning("reconciled interrupted entry=%s retry_count=%s", e.id, e.retry_count)

        await self._mutate(maintain)

    async def _attempt(self, entry_id: str) -> tuple[bool, Optional[str]]:
        """Run one upload attempt. Returns (succeeded, error); (False, None) if the entry vanished."""

        def start(entries: list[QueueEntry]) -> Optional[QueueEntry]:
            for e in entries:
                if e.id == entry_id:
                    e.move_to(EntryStatus.UPLOADING, self._clock())
                    return e.model_copy()
            return None

        entry = await self._mutate(start)
        if entry is None:
            return False, None

        error: Optional[str] = None
        terminal = False
        try:
            await self.processor(entry)
        except (PermanentServiceError, ValidationError, NotFoundError) as e:
            error, terminal = str(e), True
        except Exception as e:
            error = str(e)

        def finish(entries: list[QueueEntry]) -> None:
            for e in entries:
                if e.id != entry_id:
                    continue
                now = self._clock()
                if error is None:
                    e.move_to(EntryStatus.COMPLETED, now)
                    entries.remove(e)
                    return
                e.move_to(EntryStatus.FAILED, now)
                e.retry_count = self.max_retries if terminal else min(e.retry_count + 1, self.max_retries)
                e.last_error = error
                return

        await self._mutate(finish)
        if error is None:
            logger.info("uploaded entry=%s", entry_id)
            return True, None
        logger.warning("upload failed entry=%s terminal=%s: %s", entry_id, terminal, error)
        return False, error

    async def drain(self) -> DrainReport:
        if not self.connectivity.is_online():
            return DrainReport(message="Device is offline")

        async with self._drain_lock:
            await self._maintain()

            work = [
                e for e in await self.entries()
                if e.status == EntryStatus.PENDING
                or (e.status == EntryStatus.FAILED and e.retry_count < self.max_retries)
            ]
            work.sort(key=lambda e: (PRIORITY_ORDER[e.priority], e.created_at))

            report = DrainReport()
            for entry in work:
                if entry.retry_count > 0:
                    await self._sleep(self._backoff(entry.retry_count))
                ok, error = await self._attempt(entry.id)
                if error is None and not ok:
                    continue
                report.processed += 1
                if ok:
                    report.successful += 1
                else:
                    report.failed += 1
                    report.errors.append(error)
            return report

    async def retry_failed_uploads(self, max_retries: int | None = None, use_backoff: bool = True) -> RetryReport:
        # entries at the queue cap are terminal
        limit = self.max_retries if max_retries is None else min(max_retries, self.max_retries)

        async with self._drain_lock:
            failed = [
                e for e in await self.entries()
                if e.status == EntryStatus.FAILED and e.retry_count < limit
            ]

            report = RetryReport()
            for entry in failed:
                if use_backoff:
                    await self._sleep(self._backoff(entry.retry_count))
                ok, error = await self._attempt(entry.id)
                if error is None and not ok:
                    continue
                report.retried += 1
                if ok:
                    report.successful += 1
                else:
                    report.failed += 1

            report.skipped = sum(
                1 for e in await self.entries()
                if e.status == EntryStatus.FAILED and e.retry_count >= limit
            )
            return report

    async def status(self, include_stats: bool = False) -> QueueStatus:
        entries = await self.entries()
        counts = {s: sum(1 for e in entries if e.status == s) for s in EntryStatus}
        status = QueueStatus(
            total=len(entries),
            pending=counts[EntryStatus.PENDING],
            uploading=counts[EntryStatus.UPLOADING],
            failed=counts[EntryStatus.FAILED],
            completed=counts[EntryStatus.COMPLETED],
        )

        if include_stats:
            now = self._clock()
            attempts = sum(e.retry_count for e in entries)
            status.total_attempts = attempts
            status.average_attempts = attempts / len(entries) if entries else 0.0
            wait = sum((now - e.created_at).total_seconds() for e in entries)
            status.average_wait_seconds = wait / len(entries) if entries else 0.0
        return status

    async def entries(self) -> list[QueueEntry]:
        async with self._lock:
            return await self._load()

    async def remove(self, entry_id: str) -> None:
        def remove(entries: list[QueueEntry]) -> bool:
            before = len(entries)
            entries[:] = [e for e in entries if e.id != entry_id]
            return len(entries) != before

        if not await self._mutate(remove):
            raise NotFoundError(f"Queue entry {entry_id} not found")

    async def clear(self) -> None:
        async with self._lock:
            await self.storage.remove_item(self.storage_key)
