from functools import lru_cache

from expense_scan.services.receipt_processor import ReceiptPipeline
from expense_scan.services.record_store import ExpenseRecordStore
from expense_scan.services.storage import SqlKeyValueStore
from expense_scan.services.submission_queue import ConnectivityMonitor, SubmissionQueue

# Process-wide singletons; tests swap them through app.dependency_overrides.


@lru_cache
def get_records() -> ExpenseRecordStore:
    return ExpenseRecordStore()


@lru_cache
def get_pipeline() -> ReceiptPipeline:
    return ReceiptPipeline(records=get_records())


@lru_cache
def get_monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor()


@lru_cache
def get_queue() -> SubmissionQueue:
    queue = SubmissionQueue(SqlKeyValueStore(), get_pipeline().process_entry)
    queue.attach(get_monitor())
    return queue
