from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from expense_scan.core.db import init_db, make_engine
from expense_scan.services.errors import RecognitionServiceError

WALMART_TEXT = "WALMART\nSubtotal: $45.50\nTax: $3.64\nTOTAL: $49.14\nDate: 11/19/2025"

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def text_response(text, confidence=None):
    page = {} if confidence is None else {"confidence": confidence}
    return [{
        "textAnnotations": [{"description": text}],
        "fullTextAnnotation": {"text": text, "pages": [page]},
    }]


class FakeBackend:
    """Replays scripted responses; exceptions in the script are raised. The last item repeats."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    async def text_detection(self, request):
        self.calls.append(request)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def unavailable():
    return RecognitionServiceError("service unavailable", "UNAVAILABLE")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()
