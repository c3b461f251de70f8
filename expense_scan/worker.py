import asyncio
import logging
import os

from expense_scan.core.config import settings
from expense_scan.core.db import init_db
from expense_scan.services.receipt_processor import ReceiptPipeline
from expense_scan.services.record_store import ExpenseRecordStore
from expense_scan.services.storage import SqlKeyValueStore
from expense_scan.services.submission_queue import ConnectivityMonitor, SubmissionQueue

WORKER_ID = os.getenv("WORKER_ID", "worker-1")

logger = logging.getLogger("expense_scan.worker")


def build_queue(monitor: ConnectivityMonitor) -> SubmissionQueue:
    pipeline = ReceiptPipeline(records=ExpenseRecordStore())
    queue = SubmissionQueue(SqlKeyValueStore(), pipeline.process_entry)
    queue.attach(monitor)
    return queue


async def run_once(queue: SubmissionQueue, monitor: ConnectivityMonitor) -> None:
    # an offline -> online flip drains through the attached listener
    was_online = monitor.is_online()
    online = await monitor.refresh()
    if not online or not was_online:
        return

    report = await queue.drain()
    if report.processed:
        logger.info(
            "worker=%s drained processed=%s successful=%s failed=%s",
            WORKER_ID, report.processed, report.successful, report.failed,
        )
    for error in report.errors:
        logger.warning("worker=%s upload error: %s", WORKER_ID, error)


async def run(poll_seconds: float | None = None) -> None:
    poll = settings.WORKER_POLL_SECONDS if poll_seconds is None else poll_seconds
    monitor = ConnectivityMonitor(online=False)
    queue = build_queue(monitor)

    logger.info("worker started worker_id=%s poll=%ss", WORKER_ID, poll)
    while True:
        try:
            await run_once(queue, monitor)
        except Exception:
            # keep polling
            logger.exception("worker=%s drain cycle failed", WORKER_ID)
        await asyncio.sleep(poll)


def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("worker=%s stopped", WORKER_ID)


if __name__ == "__main__":
    main()
