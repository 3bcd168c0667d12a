"""Pytest fixtures. SQLite in-memory for repositories; mock runtimes for models."""

import threading
import time
from collections import Counter
from io import BytesIO

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from visionhub.ai.factory import create_runtime
from visionhub.ai.registry import CapabilityRegistry
from visionhub.ai.schema import MB, CapabilityDescriptor, LatencyClass
from visionhub.core import config as config_module

ALICE_EMBEDDING = [0.6, 0.8, 0.0, 0.0]
BOB_EMBEDDING = [0.0, 0.0, 1.0, 0.0]


def make_descriptor(id: str, tasks, **overrides) -> CapabilityDescriptor:
    """Build a descriptor with sensible mock defaults."""
    fields = {
        "id": id,
        "name": id,
        "tasks": frozenset(tasks),
        "runtime": "mock",
        "size_bytes": 50 * MB,
    }
    fields.update(overrides)
    return CapabilityDescriptor(**fields)


def mock_catalog() -> list[CapabilityDescriptor]:
    return [
        make_descriptor(
            "det-large",
            {"object-detection"},
            size_bytes=160 * MB,
            parameters={
                "detections": [
                    {"label": "person", "score": 0.95, "xmin": 10, "ymin": 20, "xmax": 50, "ymax": 120},
                    {"label": "chair", "score": 0.6, "xmin": 60, "ymin": 40, "xmax": 90, "ymax": 100},
                    {"label": "cup", "score": 0.3, "xmin": 5, "ymin": 5, "xmax": 15, "ymax": 15},
                ]
            },
        ),
        make_descriptor(
            "det-tiny",
            {"object-detection", "obstacle-detection"},
            size_bytes=26 * MB,
            latency_class=LatencyClass.realtime,
        ),
        make_descriptor(
            "captioner",
            {"image-captioning", "ocr"},
            size_bytes=300 * MB,
            parameters={"text": "A red square on a plain background."},
        ),
        make_descriptor(
            "faces",
            {"face-detection", "face-recognition"},
            size_bytes=30 * MB,
            parameters={
                "faces": [
                    {"x": 10, "y": 10, "width": 40, "height": 40, "score": 0.99, "embedding": ALICE_EMBEDDING},
                    {"x": 60, "y": 10, "width": 20, "height": 20, "score": 0.9, "embedding": BOB_EMBEDDING},
                ]
            },
        ),
    ]


class CountingFactory:
    """Runtime factory that records how many times each descriptor was instantiated."""

    def __init__(self, delay: float = 0.0, fail: set[str] | None = None) -> None:
        self.delay = delay
        self.fail = set(fail or ())
        self.calls: Counter[str] = Counter()
        self.closed: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, descriptor: CapabilityDescriptor):
        with self._lock:
            self.calls[descriptor.id] += 1
        if self.delay:
            time.sleep(self.delay)
        if descriptor.id in self.fail:
            raise RuntimeError(f"weights for {descriptor.id} are corrupt")
        runtime = create_runtime(descriptor)
        original_close = runtime.close

        def close():
            self.closed.append(descriptor.id)
            original_close()

        runtime.close = close
        return runtime


def _image_bytes(fmt: str = "PNG", size=(96, 64), color=(200, 30, 30)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return _image_bytes()


@pytest.fixture
def jpeg_bytes() -> bytes:
    return _image_bytes("JPEG")


@pytest.fixture
def registry() -> CapabilityRegistry:
    return CapabilityRegistry(mock_catalog())


@pytest.fixture
def counting_factory() -> CountingFactory:
    return CountingFactory()


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads, with all tables created."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def clean_config(monkeypatch):
    """Reset cached config around a test; drop env overrides."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv(config_module.DEFAULT_CONFIG_ENV_VAR, raising=False)
    config_module.reset_config()
    yield
    config_module.reset_config()
