from __future__ import annotations

import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel

from expense_scan.core.config import settings
from expense_scan.services.category_classifier import CategoryClassifier, CategoryPrediction, HistoryRecord
from expense_scan.services.errors import (
    NotFoundError,
    PermanentServiceError,
    PersistenceError,
    TransientServiceError,
    ValidationError,
)
from expense_scan.services.receipt_extractor import ParsedReceipt, ReceiptExtractor
from expense_scan.services.recognition_client import RecognitionClient, RecognitionOutcome, RecognitionResult
from expense_scan.services.record_store import ExpenseRecordStore
from expense_scan.services.storage import LocalObjectStore
from expense_scan.services.submission_queue import QueueEntry

logger = logging.getLogger(__name__)

BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")
REMOTE_PREFIXES = ("http://", "https://", "gs://")


class PipelineStatus(str, Enum):
    OCR_COMPLETE = "ocr_complete"
    OCR_FAILED = "ocr_failed"


class PipelineResult(BaseModel):
    status: PipelineStatus
    ocr_data: Optional[RecognitionResult] = None
    parsed: Optional[ParsedReceipt] = None
    prediction: Optional[CategoryPrediction] = None
    processed_at: datetime
    error: Optional[str] = None

    def record_fields(self) -> dict[str, Any]:
        """Columns of the expense row this result should be written to."""
        fields: dict[str, Any] = {
            "status": self.status.value,
            "processed_at": self.processed_at,
            "error": self.error,
        }
        if self.ocr_data is not None:
            ocr = self.ocr_data.model_dump(mode="json")
            ocr["parsed_data"] = self.parsed.model_dump(mode="json") if self.parsed else None
            fields["ocr_data"] = ocr
        if self.parsed is not None:
            fields["merchant"] = self.parsed.merchant
            fields["amount"] = self.parsed.amount
            fields["currency"] = self.parsed.currency
        if self.prediction is not None:
            fields["ml_predictions"] = self.prediction.model_dump(mode="json")
            fields["category"] = self.prediction.category
        return fields


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_remote(ref: str) -> bool:
    return ref.lower().startswith(REMOTE_PREFIXES)


class ReceiptPipeline:
    """recognize -> parse -> classify, plus the record bookkeeping around it."""

    def __init__(
        self,
        recognizer: RecognitionClient | None = None,
        extractor: ReceiptExtractor | None = None,
        classifier: CategoryClassifier | None = None,
        object_store: LocalObjectStore | None = None,
        records: ExpenseRecordStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.recognizer = recognizer or RecognitionClient()
        self.extractor = extractor or ReceiptExtractor()
        self.classifier = classifier or CategoryClassifier()
        self.object_store = object_store or LocalObjectStore()
        self.records = records
        self._clock = clock

    def _failed(self, error: str, ocr: RecognitionResult | None = None) -> PipelineResult:
        return PipelineResult(
            status=PipelineStatus.OCR_FAILED,
            ocr_data=ocr,
            processed_at=self._clock(),
            error=error,
        )

    async def process_image(
        self,
        source: str | bytes,
        history: Sequence[HistoryRecord] = (),
    ) -> PipelineResult:
        ocr = await self.recognizer.recognize(source)
        if ocr is None:
            return self._failed("Image is blank or unreadable")
        if not ocr.success:
            return self._failed(ocr.error or "OCR failed", ocr)

        errors = []
        try:
            parsed = self.extractor.parse(ocr.raw_text)
        except Exception as e:
            logger.exception("receipt parsing failed")
            errors.append(f"Parsing error: {e}")
            parsed = ParsedReceipt(date=self._clock(), raw_text=ocr.raw_text)

        try:
            prediction = self.classifier.classify(parsed.merchant, parsed.amount, ocr.raw_text, history)
        except Exception as e:
            logger.exception("category prediction failed")
            errors.append(f"Category prediction error: {e}")
            prediction = None

        return PipelineResult(
            status=PipelineStatus.OCR_COMPLETE,
            ocr_data=ocr,
            parsed=parsed,
            prediction=prediction,
            processed_at=self._clock(),
            error="; ".join(errors) or None,
        )

    async def _history(self, couple_id: str) -> list[HistoryRecord]:
        if self.records is None:
            return []
        return await self.records.history(couple_id)

    async def _load_source(self, ref: str) -> str | bytes:
        if _is_remote(ref):
            return ref
        return await self.object_store.download(ref)

    async def scan_base64(self, image_base64: str | None, couple_id: str | None) -> PipelineResult:
        """Run the pipeline on an inline image without storing anything."""
        if not image_base64:
            raise ValidationError("Missing required field: imageBase64")
        if not couple_id:
            raise ValidationError("Missing required field: coupleId")
        if not BASE64_RE.match(image_base64):
            raise ValidationError("Invalid base64 format")

        size_mb = len(image_base64) * 0.75 / (1024 * 1024)
        if size_mb > settings.DIRECT_MAX_IMAGE_MB:
            raise ValidationError(f"Image too large: {size_mb:.2f}MB (max {settings.DIRECT_MAX_IMAGE_MB:g}MB)")

        try:
            data = base64.b64decode(image_base64, validate=True)
        except binascii.Error as e:
            raise ValidationError("Invalid base64 format") from e

        logger.info("direct scan couple=%s bytes=%s", couple_id, len(data))
        return await self.process_image(data, await self._history(couple_id))

    async def process_entry(self, entry: QueueEntry) -> PipelineResult:
        """Queue processor: run one queued submission and create its expense record.

        Raises TransientServiceError when a later attempt may succeed and PermanentServiceError
        when it cannot.
        """
        source = await self._load_source(entry.image_ref)
        result = await self.process_image(source, await self._history(entry.couple_id))

        if result.status == PipelineStatus.OCR_FAILED:
            ocr = result.ocr_data
            if ocr is not None and ocr.outcome == RecognitionOutcome.TRANSIENT_ERROR:
                raise TransientServiceError(result.error or "Recognition unavailable", ocr.error_code)
            raise PermanentServiceError(result.error or "OCR failed", ocr.error_code if ocr else None)

        if self.records is not None:
            try:
                expense_id = await self.records.create(
                    couple_id=entry.couple_id,
                    user_id=entry.user_id,
                    receipt_url=entry.image_ref,
                    **result.record_fields(),
                )
            except PersistenceError as e:
                raise PersistenceError(str(e), result=result) from e
            logger.info("entry=%s stored as expense=%s", entry.id, expense_id)
        return result

    async def process_stored_receipt(
        self,
        expense_id: str | None,
        receipt_url: str | None,
        couple_id: str | None,
        user_id: str | None,
    ) -> PipelineResult:
        """Process a receipt already in the object store and write the outcome to its expense."""
        provided = {"expenseId": expense_id, "receiptUrl": receipt_url, "coupleId": couple_id, "userId": user_id}
        missing = [name for name, value in provided.items() if not value]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if self.records is None:
            raise PersistenceError("No expense record store configured")

        expense = await self.records.get(expense_id)
        if expense is None or expense.couple_id != couple_id:
            raise NotFoundError(f"Expense {expense_id} not found")

        try:
            source = await self._load_source(receipt_url)
        except NotFoundError as e:
            result = self._failed(str(e))
        else:
            result = await self.process_image(source, await self._history(couple_id))

        try:
            await self.records.update(expense_id, result.record_fields())
        except PersistenceError as e:
            logger.error("failed to store result expense=%s: %s", expense_id, e)
            raise PersistenceError(str(e), result=result) from e

        logger.info(
            "processed expense=%s status=%s category=%s",
            expense_id, result.status.value, result.prediction.category if result.prediction else None,
        )
        return result
