import os

# Must be set before the backend modules read their configuration
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_FILE"] = ""
os.environ["STRICT_LEDGER_INVARIANTS"] = "1"

import asyncio
from contextlib import asynccontextmanager
from datetime import date

import cv2
import numpy as np
import pytest

from attendance_service import AttendanceService
from camera_manager import CaptureDevice, CaptureSession
from database import init_db, make_engine, make_session_factory
from errors import CameraError
from ledger import AttendanceStore
from matcher import VisualIdentityMatcher, VisualMatcherService
from registry import IdentityRegistry

DAY = date(2024, 7, 1)


def make_image(seed: int, width: int = 320, height: int = 240) -> bytes:
    """PNG of random noise; different seeds give visually different images."""
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    success, buffer = cv2.imencode('.png', img)
    assert success
    return buffer.tobytes()


class FakeMatcherService(VisualMatcherService):
    """Returns a canned response and records every call."""

    def __init__(self, response=None, error=None, delay=0.0):
        self.response = response if response is not None else {"status": "NO_MATCH"}
        self.error = error
        self.delay = delay
        self.calls = []

    async def compare(self, query_image, candidates):
        self.calls.append((query_image, list(candidates)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeCaptureSession(CaptureSession):

    def __init__(self, camera):
        self.camera = camera

    async def frame(self) -> bytes:
        if self.camera.delay:
            await asyncio.sleep(self.camera.delay)
        if self.camera.frame_error is not None:
            raise self.camera.frame_error
        return self.camera.frame_bytes


class FakeCamera(CaptureDevice):
    """Hands out a fixed frame and counts acquire/release."""

    def __init__(self, frame_bytes=b"", open_error=None, frame_error=None, delay=0.0):
        self.frame_bytes = frame_bytes
        self.open_error = open_error
        self.frame_error = frame_error
        self.delay = delay
        self.acquired = 0
        self.released = 0
        self.held = False

    @asynccontextmanager
    async def acquire(self):
        if self.open_error is not None:
            raise self.open_error
        if self.held:
            raise CameraError("Camera is already in use")
        self.acquired += 1
        self.held = True
        try:
            yield FakeCaptureSession(self)
        finally:
            self.held = False
            self.released += 1


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def registry(session_factory):
    return IdentityRegistry(session_factory)


@pytest.fixture
def store(session_factory):
    return AttendanceStore(session_factory, strict=True)


@pytest.fixture
def matcher_service():
    return FakeMatcherService()


@pytest.fixture
def matcher(matcher_service):
    return VisualIdentityMatcher(matcher_service, threshold=0.75, timeout=1.0)


@pytest.fixture
def service(registry, store, matcher):
    return AttendanceService(registry, store, matcher)
