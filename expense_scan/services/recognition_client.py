from __future__ import annotations

import asyncio
import base64
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field

from expense_scan.core.config import settings
from expense_scan.services.errors import RecognitionServiceError, ValidationError

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = frozenset({"UNAVAILABLE", "DEADLINE_EXCEEDED", "INTERNAL", "UNKNOWN"})

LOW_CONFIDENCE_THRESHOLD = 0.5
# Used when text was found but the service reports no page-level score.
DEFAULT_TEXT_CONFIDENCE = 0.85

NO_TEXT_ERROR_CODE = "NO_TEXT"


class RecognitionOutcome(str, Enum):
    SUCCESS = "success"
    NO_TEXT_DETECTED = "no_text_detected"
    BLANK_IMAGE = "blank_image"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


class RecognitionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    raw_text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    warning: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    outcome: RecognitionOutcome


def outcome_of(result: RecognitionResult | None) -> RecognitionOutcome:
    if result is None:
        return RecognitionOutcome.BLANK_IMAGE
    return result.outcome


def is_transient(code: str | None) -> bool:
    return code in TRANSIENT_ERROR_CODES


class RecognitionBackend(Protocol):
    """Text-detection capability.

    Takes `{"image": {"source": {"imageUri": ...}}}` or `{"image": {"content": bytes}}` and
    returns a list whose first element may carry `textAnnotations` and `fullTextAnnotation`.
    Failures raise RecognitionServiceError with the service's status code.
    """

    async def text_detection(self, request: dict[str, Any]) -> list[dict[str, Any]]: ...


def _sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if data.startswith(b"%PDF"):
        return "application/pdf"
    return "image/jpeg"


def _status_code_name(status: int) -> str:
    if status == 413:
        return "TOO_LARGE"
    if status == 429:
        return "RESOURCE_EXHAUSTED"
    if status in (400, 422):
        return "INVALID_ARGUMENT"
    if status == 401:
        return "UNAUTHENTICATED"
    if status == 403:
        return "PERMISSION_DENIED"
    if status == 404:
        return "NOT_FOUND"
    if status in (503, 502):
        return "UNAVAILABLE"
    if status == 504:
        return "DEADLINE_EXCEEDED"
    if status >= 500:
        return "INTERNAL"
    return "FAILED_PRECONDITION"


class OpenAIVisionBackend:
    """Recognition backend on top of the OpenAI responses API.

    The model does the reading; this class only shapes its answer like a text-detection
    response so the client logic is provider independent.
    """

    NO_DOCUMENT_MARKER = "NO_DOCUMENT"
    NO_TEXT_MARKER = "NO_TEXT"

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        self._client = client
        self.model = model or settings.OPENAI_OCR_MODEL

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            # retries belong to RecognitionClient
            self._client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY or None, max_retries=0)
        return self._client

    def _image_url(self, request: dict[str, Any]) -> str:
        image = request.get("image") or {}
        if "content" in image:
            data = image["content"]
            b64 = base64.b64encode(data).decode("utf-8")
            return f"data:{_sniff_mime(data)};base64,{b64}"
        return image["source"]["imageUri"]

    async def text_detection(self, request: dict[str, Any]) -> list[dict[str, Any]]:
        prompt = (
            "You are an OCR engine for receipts.\n"
            "Task: extract ALL visible text from the receipt image.\n"
            "Rules:\n"
            "- Output ONLY the extracted text, no commentary.\n"
            "- Preserve reading order and line breaks as much as possible.\n"
            "- If a token is unclear, keep the best guess rather than omitting.\n"
            f"- If you cannot find any document or receipt in the image, output {self.NO_DOCUMENT_MARKER}.\n"
            f"- If there is a document but no legible text, output {self.NO_TEXT_MARKER}.\n"
        )

        try:
            resp = await self.client.responses.create(
                model=self.model,
                input=[{
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": prompt},
                        {"type": "input_image", "image_url": self._image_url(request)},
                    ],
                }],
                temperature=0,
                max_output_tokens=2000,
            )
        except openai.APITimeoutError as e:
            raise RecognitionServiceError(str(e), "DEADLINE_EXCEEDED") from e
        except openai.APIConnectionError as e:
            raise RecognitionServiceError(str(e), "UNAVAILABLE") from e
        except openai.APIStatusError as e:
            raise RecognitionServiceError(str(e), _status_code_name(e.status_code)) from e
        except openai.APIError as e:
            raise RecognitionServiceError(str(e), "UNKNOWN") from e

        text = (resp.output_text or "").strip()
        if not text or text == self.NO_DOCUMENT_MARKER:
            return [{}]
        if text == self.NO_TEXT_MARKER:
            return [{"textAnnotations": [], "fullTextAnnotation": {"text": "", "pages": [{}]}}]
        return [{
            "textAnnotations": [{"description": text}],
            "fullTextAnnotation": {"text": text, "pages": [{}]},
        }]


def extract_raw_text(response: list[dict[str, Any]] | None) -> str:
    if not response or not response[0]:
        return ""
    result = response[0]

    full = result.get("fullTextAnnotation") or {}
    if full.get("text"):
        return full["text"]

    annotations = result.get("textAnnotations") or []
    if annotations:
        return annotations[0].get("description") or ""
    return ""


def page_confidence(response: list[dict[str, Any]] | None) -> float:
    if not response or not response[0]:
        return 0.0
    result = response[0]

    pages = (result.get("fullTextAnnotation") or {}).get("pages") or []
    if pages and isinstance(pages[0].get("confidence"), (int, float)):
        return float(pages[0]["confidence"])

    if result.get("textAnnotations"):
        return DEFAULT_TEXT_CONFIDENCE
    return 0.0


class RecognitionClient:
    def __init__(
        self,
        backend: RecognitionBackend | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_image_bytes: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.backend = backend or OpenAIVisionBackend()
        self.max_attempts = max_attempts or settings.OCR_MAX_ATTEMPTS
        self.base_delay = settings.OCR_RETRY_BASE_SECONDS if base_delay is None else base_delay
        self.max_image_bytes = max_image_bytes or settings.OCR_MAX_IMAGE_MB * 1024 * 1024
        self._sleep = sleep

    def _build_request(self, source: str | bytes) -> dict[str, Any]:
        if isinstance(source, (bytes, bytearray)):
            if len(source) == 0:
                raise ValidationError("Empty image buffer")
            if len(source) > self.max_image_bytes:
                raise ValidationError(
                    f"Image too large: {len(source) / 1024 / 1024:.1f}MB exceeds maximum "
                    f"{self.max_image_bytes // (1024 * 1024)}MB"
                )
            return {"image": {"content": bytes(source)}}

        if not isinstance(source, str) or not source.strip():
            raise ValidationError("Invalid image URL: URL must be a non-empty string")
        return {"image": {"source": {"imageUri": source.strip()}}}

    async def _call_with_retry(self, request: dict[str, Any]) -> list[dict[str, Any]]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.backend.text_detection(request)
            except RecognitionServiceError as e:
                if not is_transient(e.code):
                    raise
                if attempt >= self.max_attempts:
                    raise RecognitionServiceError(
                        f"Recognition service failed after {self.max_attempts} retries: {e}",
                        e.code,
                    ) from e
                delay = self.base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "recognition attempt=%s code=%s failed, retrying in %.1fs", attempt, e.code, delay
                )
                await self._sleep(delay)

    async def recognize(self, source: str | bytes) -> RecognitionResult | None:
        """Read the text on a receipt image.

        Returns None when the service could not even locate a page, and a result with
        `success=False` when it read the page but found nothing or when the call failed.
        Raises ValidationError for unusable input before any service call.
        """
        request = self._build_request(source)

        try:
            response = await self._call_with_retry(request)
        except RecognitionServiceError as e:
            transient = is_transient(e.code)
            logger.error("recognition failed code=%s transient=%s: %s", e.code, transient, e)
            return RecognitionResult(
                success=False,
                error=str(e) or "Unknown error",
                error_code=e.code or "UNKNOWN",
                outcome=RecognitionOutcome.TRANSIENT_ERROR if transient else RecognitionOutcome.PERMANENT_ERROR,
            )
        except Exception as e:
            # unclassified backend failure, not retried
            logger.exception("recognition failed with unexpected error")
            return RecognitionResult(
                success=False,
                error=str(e) or type(e).__name__,
                error_code="UNKNOWN",
                outcome=RecognitionOutcome.PERMANENT_ERROR,
            )

        raw_text = extract_raw_text(response)
        if not raw_text.strip():
            if not response or not response[0] or not response[0].get("fullTextAnnotation"):
                return None
            return RecognitionResult(
                success=False,
                error="No text detected",
                error_code=NO_TEXT_ERROR_CODE,
                outcome=RecognitionOutcome.NO_TEXT_DETECTED,
            )

        confidence = min(max(page_confidence(response), 0.0), 1.0)
        warning = None
        if 0 < confidence < LOW_CONFIDENCE_THRESHOLD:
            warning = (
                f"Text extraction completed with low confidence ({confidence * 100:.1f}%). "
                "Results may be inaccurate."
            )

        return RecognitionResult(
            success=True,
            raw_text=raw_text,
            confidence=confidence,
            warning=warning,
            outcome=RecognitionOutcome.SUCCESS,
        )
