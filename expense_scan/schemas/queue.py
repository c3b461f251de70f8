from datetime import datetime

from expense_scan.schemas.common import CamelModel
from expense_scan.schemas.receipt import ScanOut


class SubmitRequest(CamelModel):
    image_ref: str | None = None
    couple_id: str | None = None
    user_id: str | None = None
    priority: str = "medium"


class RetryRequest(CamelModel):
    max_retries: int | None = None
    use_backoff: bool = True


class ConnectivityRequest(CamelModel):
    online: bool


class QueueEntryOut(CamelModel):
    id: str
    image_ref: str
    couple_id: str
    user_id: str
    priority: str
    status: str
    retry_count: int
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None

    model_config = {"from_attributes": True}


class SubmitOut(CamelModel):
    uploaded: bool
    entry: QueueEntryOut | None = None
    result: ScanOut | None = None


class DrainOut(CamelModel):
    processed: int
    successful: int
    failed: int
    errors: list[str] = []
    message: str | None = None

    model_config = {"from_attributes": True}


class RetryOut(CamelModel):
    retried: int
    successful: int
    failed: int
    skipped: int

    model_config = {"from_attributes": True}


class QueueStatusOut(CamelModel):
    total: int
    pending: int
    uploading: int
    failed: int
    completed: int
    total_attempts: int | None = None
    average_attempts: float | None = None
    average_wait_seconds: float | None = None

    model_config = {"from_attributes": True}


class ConnectivityOut(CamelModel):
    online: bool
