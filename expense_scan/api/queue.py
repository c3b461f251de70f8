from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from expense_scan.api.deps import get_monitor, get_queue
from expense_scan.schemas.common import Envelope
from expense_scan.schemas.queue import (
    ConnectivityOut,
    ConnectivityRequest,
    DrainOut,
    QueueEntryOut,
    QueueStatusOut,
    RetryOut,
    RetryRequest,
    SubmitOut,
    SubmitRequest,
)
from expense_scan.schemas.receipt import ScanOut
from expense_scan.services.submission_queue import (
    ConnectivityMonitor,
    QueueEntry,
    SubmissionQueue,
)

router = APIRouter(prefix="/queue", tags=["queue"])


def _entry_out(entry: QueueEntry) -> QueueEntryOut:
    return QueueEntryOut.model_validate(entry.model_dump(mode="json"))


@router.post("", response_model=Envelope[SubmitOut])
async def submit(
    payload: SubmitRequest,
    queue: SubmissionQueue = Depends(get_queue),
):
    outcome = await queue.submit(payload.image_ref, payload.couple_id, payload.user_id, payload.priority)
    if isinstance(outcome, QueueEntry):
        return Envelope[SubmitOut](data=SubmitOut(uploaded=False, entry=_entry_out(outcome)))
    return Envelope[SubmitOut](data=SubmitOut(uploaded=True, result=ScanOut.from_result(outcome.result)))


@router.post("/drain", response_model=Envelope[DrainOut])
async def drain(queue: SubmissionQueue = Depends(get_queue)):
    report = await queue.drain()
    return Envelope[DrainOut](data=DrainOut.model_validate(report))


@router.post("/retry", response_model=Envelope[RetryOut])
async def retry_failed(
    payload: RetryRequest | None = None,
    queue: SubmissionQueue = Depends(get_queue),
):
    payload = payload or RetryRequest()
    report = await queue.retry_failed_uploads(payload.max_retries, payload.use_backoff)
    return Envelope[RetryOut](data=RetryOut.model_validate(report))


@router.get("", response_model=Envelope[QueueStatusOut])
async def queue_status(
    include_stats: bool = Query(False, alias="includeStats"),
    queue: SubmissionQueue = Depends(get_queue),
):
    status = await queue.status(include_stats=include_stats)
    return Envelope[QueueStatusOut](data=QueueStatusOut.model_validate(status))


@router.get("/entries", response_model=Envelope[list[QueueEntryOut]])
async def list_entries(queue: SubmissionQueue = Depends(get_queue)):
    entries = await queue.entries()
    return Envelope[list[QueueEntryOut]](data=[_entry_out(e) for e in entries])


@router.delete("/{entry_id}", response_model=Envelope[dict])
async def remove_entry(entry_id: str, queue: SubmissionQueue = Depends(get_queue)):
    await queue.remove(entry_id)
    return Envelope[dict](data={"removed": entry_id})


@router.delete("", response_model=Envelope[dict])
async def clear_queue(queue: SubmissionQueue = Depends(get_queue)):
    await queue.clear()
    return Envelope[dict](data={"cleared": True})


@router.post("/connectivity", response_model=Envelope[ConnectivityOut])
async def report_connectivity(
    payload: ConnectivityRequest,
    monitor: ConnectivityMonitor = Depends(get_monitor),
):
    await monitor.set_online(payload.online)
    return Envelope[ConnectivityOut](data=ConnectivityOut(online=monitor.is_online()))
