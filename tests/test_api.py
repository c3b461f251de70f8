import asyncio
import base64
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import WALMART_TEXT, FakeBackend, FakeClock, SleepRecorder, text_response
from expense_scan.api.deps import get_monitor, get_pipeline, get_queue
from expense_scan.main import app
from expense_scan.services.receipt_extractor import ReceiptExtractor
from expense_scan.services.receipt_processor import ReceiptPipeline
from expense_scan.services.recognition_client import RecognitionClient
from expense_scan.services.record_store import ExpenseRecordStore
from expense_scan.services.storage import InMemoryKeyValueStore, LocalObjectStore
from expense_scan.services.submission_queue import ConnectivityMonitor, SubmissionQueue


@pytest.fixture
def backend():
    return FakeBackend(text_response(WALMART_TEXT, 0.95))


@pytest.fixture
def records(session_factory):
    return ExpenseRecordStore(session_factory)


@pytest.fixture
def client(tmp_path, backend, records):
    pipeline = ReceiptPipeline(
        recognizer=RecognitionClient(backend=backend, base_delay=0, sleep=SleepRecorder()),
        extractor=ReceiptExtractor(clock=FakeClock()),
        object_store=LocalObjectStore(tmp_path / "uploads"),
        records=records,
        clock=FakeClock(),
    )
    monitor = ConnectivityMonitor(online=True)
    queue = SubmissionQueue(
        InMemoryKeyValueStore(), pipeline.process_entry, clock=FakeClock(), sleep=SleepRecorder(),
    )
    queue.attach(monitor)

    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_monitor] = lambda: monitor
    app.dependency_overrides[get_queue] = lambda: queue
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_scan_receipt(client):
    encoded = base64.b64encode(b"\xff\xd8 fake jpeg").decode()

    resp = client.post("/receipts/scan", json={"imageBase64": encoded, "coupleId": "c1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    data = body["data"]
    assert data["merchant"] == "WALMART"
    assert Decimal(str(data["amount"])) == Decimal("49.14")
    assert data["date"].startswith("2025-11-19")
    assert data["suggestedCategory"] == "groceries"
    assert data["ocrConfidence"] == pytest.approx(0.95)
    assert data["currency"] == "USD"


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"coupleId": "c1"}, "Missing required field: imageBase64"),
        ({"imageBase64": "%%%", "coupleId": "c1"}, "Invalid base64 format"),
    ],
)
def test_scan_receipt_rejects_bad_input(client, payload, message):
    resp = client.post("/receipts/scan", json=payload)

    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": message}


def test_scan_blank_image(client, backend):
    backend.script = [[{}]]
    encoded = base64.b64encode(b"blank").decode()

    body = client.post("/receipts/scan", json={"imageBase64": encoded, "coupleId": "c1"}).json()

    assert body["success"] is False
    assert body["error"] == "OCR failed: Image is blank or unreadable"


def test_process_receipt(client, records, tmp_path):
    asyncio.run(records.create(id="exp-1", couple_id="c1", user_id="u1"))
    target = tmp_path / "uploads" / "c1" / "r.jpg"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"\xff\xd8 jpeg")

    resp = client.post(
        "/receipts/process",
        json={"expenseId": "exp-1", "receiptUrl": "c1/r.jpg", "coupleId": "c1", "userId": "u1"},
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["expenseId"] == "exp-1"
    assert data["status"] == "ocr_complete"
    assert data["suggestedCategory"] == "groceries"
    assert asyncio.run(records.get("exp-1")).status == "ocr_complete"


def test_process_receipt_missing_fields(client):
    resp = client.post("/receipts/process", json={"expenseId": "exp-1"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing required fields: receiptUrl, coupleId, userId"


def test_process_receipt_unknown_expense(client):
    resp = client.post(
        "/receipts/process",
        json={"expenseId": "nope", "receiptUrl": "c1/r.jpg", "coupleId": "c1", "userId": "u1"},
    )
    assert resp.status_code == 404


def test_queue_flow_while_offline(client):
    assert client.post("/queue/connectivity", json={"online": False}).json()["data"] == {"online": False}

    submitted = client.post(
        "/queue", json={"imageRef": "c1/r.jpg", "coupleId": "c1", "userId": "u1", "priority": "high"}
    ).json()["data"]
    assert submitted["uploaded"] is False
    entry_id = submitted["entry"]["id"]
    assert submitted["entry"]["priority"] == "high"
    assert submitted["entry"]["retryCount"] == 0

    status = client.get("/queue", params={"includeStats": "true"}).json()["data"]
    assert (status["total"], status["pending"]) == (1, 1)
    assert status["totalAttempts"] == 0

    entries = client.get("/queue/entries").json()["data"]
    assert [e["id"] for e in entries] == [entry_id]

    drained = client.post("/queue/drain").json()["data"]
    assert drained["message"] == "Device is offline"

    assert client.delete(f"/queue/{entry_id}").status_code == 200
    assert client.delete(f"/queue/{entry_id}").status_code == 404
    assert client.get("/queue").json()["data"]["total"] == 0


def test_queue_submit_online_processes_immediately(client, tmp_path):
    target = tmp_path / "uploads" / "c1" / "r.jpg"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"\xff\xd8 jpeg")

    data = client.post("/queue", json={"imageRef": "c1/r.jpg", "coupleId": "c1", "userId": "u1"}).json()["data"]

    assert data["uploaded"] is True
    assert data["result"]["merchant"] == "WALMART"


def test_queue_submit_validation(client):
    resp = client.post("/queue", json={"imageRef": "c1/r.jpg", "coupleId": "c1", "userId": "u1", "priority": "asap"})
    assert resp.status_code == 400


def test_reconnect_drains_queue(client, tmp_path):
    target = tmp_path / "uploads" / "c1" / "r.jpg"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"\xff\xd8 jpeg")

    client.post("/queue/connectivity", json={"online": False})
    client.post("/queue", json={"imageRef": "c1/r.jpg", "coupleId": "c1", "userId": "u1"})
    client.post("/queue/connectivity", json={"online": True})

    assert client.get("/queue").json()["data"]["total"] == 0


def test_retry_and_clear(client):
    retried = client.post("/queue/retry", json={"useBackoff": False}).json()["data"]
    assert retried == {"retried": 0, "successful": 0, "failed": 0, "skipped": 0}
    assert client.delete("/queue").json()["data"] == {"cleared": True}
