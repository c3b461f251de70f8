import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from conftest import FakeBackend, SleepRecorder, text_response, unavailable
from expense_scan.services.errors import RecognitionServiceError, ValidationError
from expense_scan.services.recognition_client import (
    DEFAULT_TEXT_CONFIDENCE,
    OpenAIVisionBackend,
    RecognitionClient,
    RecognitionOutcome,
    _status_code_name,
    outcome_of,
)


def make_client(backend, sleep=None, **kwargs):
    return RecognitionClient(
        backend=backend,
        max_attempts=3,
        base_delay=1.0,
        sleep=sleep or SleepRecorder(),
        **kwargs,
    )


def test_two_transient_failures_then_success():
    backend = FakeBackend(unavailable(), unavailable(), text_response("COFFEE SHOP\nTOTAL 4.50", 0.93))
    result = asyncio.run(make_client(backend).recognize("https://example.com/r.jpg"))

    assert len(backend.calls) == 3
    assert result.success is True
    assert result.raw_text.startswith("COFFEE SHOP")
    assert result.confidence == pytest.approx(0.93)
    assert result.outcome == RecognitionOutcome.SUCCESS


def test_retries_stop_after_three_attempts():
    backend = FakeBackend(*[unavailable() for _ in range(5)])
    result = asyncio.run(make_client(backend).recognize(b"\x89PNG fake"))

    assert len(backend.calls) == 3
    assert result.success is False
    assert "3 retries" in result.error
    assert result.error_code == "UNAVAILABLE"
    assert result.outcome == RecognitionOutcome.TRANSIENT_ERROR
    assert result.raw_text == ""


def test_backoff_doubles_between_attempts():
    sleeper = SleepRecorder()
    backend = FakeBackend(
        RecognitionServiceError("slow", "DEADLINE_EXCEEDED"),
        RecognitionServiceError("boom", "INTERNAL"),
        text_response("SHOP\nTOTAL 1.00"),
    )
    asyncio.run(make_client(backend, sleep=sleeper).recognize("gs://bucket/r.jpg"))

    assert sleeper.delays == [1.0, 2.0]


def test_permanent_error_is_not_retried():
    backend = FakeBackend(RecognitionServiceError("bad image", "INVALID_ARGUMENT"))
    result = asyncio.run(make_client(backend).recognize("https://example.com/r.jpg"))

    assert len(backend.calls) == 1
    assert result.success is False
    assert result.error_code == "INVALID_ARGUMENT"
    assert result.outcome == RecognitionOutcome.PERMANENT_ERROR


def test_unexpected_backend_error_becomes_failed_result():
    sleeper = SleepRecorder()
    backend = FakeBackend(RuntimeError("malformed response"))
    result = asyncio.run(make_client(backend, sleep=sleeper).recognize("https://example.com/r.jpg"))

    assert len(backend.calls) == 1
    assert sleeper.delays == []
    assert result.success is False
    assert result.error == "malformed response"
    assert result.error_code == "UNKNOWN"
    assert result.outcome == RecognitionOutcome.PERMANENT_ERROR


def test_blank_image_returns_none():
    result = asyncio.run(make_client(FakeBackend([{}])).recognize(b"blank"))

    assert result is None
    assert outcome_of(result) == RecognitionOutcome.BLANK_IMAGE


def test_page_without_text_is_no_text_detected():
    backend = FakeBackend([{"textAnnotations": [], "fullTextAnnotation": {"text": "", "pages": [{}]}}])
    result = asyncio.run(make_client(backend).recognize(b"page"))

    assert result.success is False
    assert result.error == "No text detected"
    assert result.outcome == RecognitionOutcome.NO_TEXT_DETECTED


def test_missing_page_confidence_uses_default():
    result = asyncio.run(make_client(FakeBackend(text_response("SHOP"))).recognize(b"img"))

    assert result.confidence == DEFAULT_TEXT_CONFIDENCE
    assert result.warning is None


def test_low_confidence_adds_warning():
    result = asyncio.run(make_client(FakeBackend(text_response("SH0P", 0.3))).recognize(b"img"))

    assert result.success is True
    assert "low confidence (30.0%)" in result.warning


@pytest.mark.parametrize("source", [b"", "", "   "])
def test_unusable_input_raises_before_calling_service(source):
    backend = FakeBackend(text_response("never"))
    with pytest.raises(ValidationError):
        asyncio.run(make_client(backend).recognize(source))
    assert backend.calls == []


def test_oversized_image_rejected():
    backend = FakeBackend(text_response("never"))
    client = make_client(backend, max_image_bytes=10)
    with pytest.raises(ValidationError, match="too large"):
        asyncio.run(client.recognize(b"x" * 11))
    assert backend.calls == []


def test_bytes_and_urls_build_different_requests():
    backend = FakeBackend(text_response("SHOP"))
    client = make_client(backend)
    asyncio.run(client.recognize(b"abc"))
    asyncio.run(client.recognize(" https://example.com/r.jpg "))

    assert backend.calls[0] == {"image": {"content": b"abc"}}
    assert backend.calls[1] == {"image": {"source": {"imageUri": "https://example.com/r.jpg"}}}


@pytest.mark.parametrize(
    "status, code",
    [(413, "TOO_LARGE"), (429, "RESOURCE_EXHAUSTED"), (400, "INVALID_ARGUMENT"),
     (503, "UNAVAILABLE"), (504, "DEADLINE_EXCEEDED"), (500, "INTERNAL")],
)
def test_http_status_mapping(status, code):
    assert _status_code_name(status) == code


def _fake_openai(output_text):
    captured = {}

    async def create(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(output_text=output_text)

    return SimpleNamespace(responses=SimpleNamespace(create=create)), captured


def test_openai_backend_shapes_text_response():
    client, captured = _fake_openai("WALMART\nTOTAL 9.99")
    backend = OpenAIVisionBackend(client=client, model="test-model")

    response = asyncio.run(backend.text_detection({"image": {"content": b"\x89PNG data"}}))

    assert response[0]["fullTextAnnotation"]["text"] == "WALMART\nTOTAL 9.99"
    image_part = captured["input"][0]["content"][1]
    assert image_part["image_url"].startswith("data:image/png;base64,")
    assert captured["model"] == "test-model"


@pytest.mark.parametrize(
    "output, expected",
    [("NO_DOCUMENT", None), ("", None), ("NO_TEXT", RecognitionOutcome.NO_TEXT_DETECTED)],
)
def test_openai_backend_markers(output, expected):
    client, _ = _fake_openai(output)
    recognizer = make_client(OpenAIVisionBackend(client=client))

    result = asyncio.run(recognizer.recognize("https://example.com/r.jpg"))

    assert outcome_of(result) == (expected or RecognitionOutcome.BLANK_IMAGE)


def test_openai_backend_maps_other_api_errors():
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")

    async def create(**kwargs):
        raise openai.APIResponseValidationError(
            response=httpx.Response(200, request=request), body=None, message="bad payload",
        )

    client = SimpleNamespace(responses=SimpleNamespace(create=create))
    backend = OpenAIVisionBackend(client=client)

    with pytest.raises(RecognitionServiceError) as exc_info:
        asyncio.run(backend.text_detection({"image": {"content": b"\x89PNG data"}}))
    assert exc_info.value.code == "UNKNOWN"
