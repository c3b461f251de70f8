from datetime import datetime
from decimal import Decimal

from expense_scan.schemas.common import CamelModel
from expense_scan.services.receipt_processor import PipelineResult


class ScanRequest(CamelModel):
    image_base64: str | None = None
    couple_id: str | None = None


class ProcessRequest(CamelModel):
    expense_id: str | None = None
    receipt_url: str | None = None
    couple_id: str | None = None
    user_id: str | None = None


class AlternativeOut(CamelModel):
    category: str
    confidence: float


class ScanOut(CamelModel):
    status: str
    merchant: str | None = None
    amount: Decimal | None = None
    date: datetime | None = None
    date_detected: bool = False
    currency: str | None = None
    currency_confidence: float = 0.0
    parse_confidence: float = 0.0

    suggested_category: str | None = None
    category_confidence: float = 0.0
    category_source: str | None = None
    alternative_categories: list[AlternativeOut] = []

    ocr_confidence: float = 0.0
    warning: str | None = None
    raw_text: str = ""

    processed_at: datetime
    error: str | None = None

    @classmethod
    def from_result(cls, result: PipelineResult) -> "ScanOut":
        out = cls(status=result.status.value, processed_at=result.processed_at, error=result.error)
        if result.ocr_data is not None:
            out.ocr_confidence = result.ocr_data.confidence
            out.warning = result.ocr_data.warning
            out.raw_text = result.ocr_data.raw_text
        if result.parsed is not None:
            p = result.parsed
            out.merchant = p.merchant
            out.amount = p.amount
            out.date = p.date
            out.date_detected = p.date_detected
            out.currency = p.currency
            out.currency_confidence = p.currency_confidence
            out.parse_confidence = p.confidence
        if result.prediction is not None:
            pred = result.prediction
            out.suggested_category = pred.category
            out.category_confidence = pred.confidence
            out.category_source = pred.source.value
            out.alternative_categories = [
                AlternativeOut(category=a.category, confidence=a.confidence) for a in pred.alternatives
            ]
        return out


class ProcessOut(CamelModel):
    expense_id: str
    status: str
    ocr_confidence: float | None = None
    parsed_amount: Decimal | None = None
    suggested_category: str | None = None
    category_confidence: float | None = None
    processed_at: datetime

    @classmethod
    def from_result(cls, expense_id: str, result: PipelineResult) -> "ProcessOut":
        return cls(
            expense_id=expense_id,
            status=result.status.value,
            ocr_confidence=result.ocr_data.confidence if result.ocr_data else None,
            parsed_amount=result.parsed.amount if result.parsed else None,
            suggested_category=result.prediction.category if result.prediction else None,
            category_confidence=result.prediction.confidence if result.prediction else None,
            processed_at=result.processed_at,
        )
