"""Test configuration and fixtures"""

import io
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from image_optimizer.conversion.converters import Converter, ConverterFactory
from image_optimizer.db import KeyValueStore, make_engine
from image_optimizer.main import build_services, create_app


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConverter(Converter):
    """Writes placeholder bytes instead of encoding. Records every call."""

    name = "fake"
    priority = 1

    def __init__(self, formats=("webp", "avif"), output_size: Optional[int] = None, available: bool = True):
        self.formats = set(formats)
        self.output_size = output_size
        self.available = available
        self.result = True
        self.error: Optional[Exception] = None
        self.on_convert = None
        self.calls: list[tuple[Path, Path, str, int]] = []

    def is_available(self) -> bool:
        return self.available

    def supported_formats(self) -> set[str]:
        return set(self.formats) if self.available else set()

    def convert(self, src, dst, fmt, quality) -> bool:
        self.calls.append((Path(src), Path(dst), fmt, quality))
        if self.on_convert is not None:
            self.on_convert()
        if self.error is not None:
            raise self.error
        if not self.result:
            return False
        size = self.output_size if self.output_size is not None else max(1, Path(src).stat().st_size // 2)
        Path(dst).write_bytes(b"\0" * size)
        return True


class FakeTicker:
    """Stands in for BatchTicker; tests call process_batch() themselves."""

    interval = 60

    def __init__(self):
        self.armed = False

    @property
    def next_run(self):
        return 0.0 if self.armed else None

    def arm(self):
        self.armed = True

    def disarm(self):
        self.armed = False

    def stop(self):
        self.armed = False


def make_jpeg(path: Path, size: Optional[int] = None, dims=(16, 16), color=(200, 30, 30)) -> Path:
    """Real JPEG, padded with trailing bytes to an exact file size when size is given."""
    buf = io.BytesIO()
    Image.new("RGB", dims, color).save(buf, "JPEG")
    data = buf.getvalue()
    if size is not None:
        assert size >= len(data)
        data += b"\0" * (size - len(data))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def make_png(path: Path, dims=(16, 16), mode="RGB") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    color = (0, 128, 255, 128) if mode == "RGBA" else (0, 128, 255)
    Image.new(mode, dims, color).save(path, "PNG")
    return path


@pytest.fixture
def clock():
    """Frozen clock"""
    return FrozenClock()


@pytest.fixture
def media_root(tmp_path):
    """Temporary media library root"""
    root = tmp_path / "media"
    root.mkdir()
    return root


@pytest.fixture
def store():
    """In-memory key/value store"""
    kv = KeyValueStore(make_engine("sqlite:///:memory:"))
    kv.ensure_tables()
    return kv


@pytest.fixture
def fake_converter():
    return FakeConverter()


@pytest.fixture
def factory(fake_converter):
    return ConverterFactory([fake_converter])


@pytest.fixture
def services(store, media_root, factory, clock):
    """Fully wired services with a fake converter and a manual ticker"""
    return build_services(store, media_root, factory=factory, ticker=FakeTicker(), clock=clock, admin_token="")


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


@pytest.fixture
def scheduler(services):
    return services.scheduler


@pytest.fixture
def client(services):
    """Test client bound to the fixture services"""
    with TestClient(create_app(services)) as test_client:
        yield test_client
