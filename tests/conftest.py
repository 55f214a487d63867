import io
import os
from pathlib import Path

import pytest
from PIL import Image

from reporting import RecordingReporter
from schemas import DeliveryConfig, RunConfig

BASE_URL = "https://reader.test/services/view.php"
SUBFOLDER = "MSIM4408/"
SESSION_ID = "sq4rafd8097t7tq5hhjvv8u0cq"


def make_jpeg(width: int = 200, height: int = 250) -> bytes:
    """Random-noise JPEG, large enough to pass the minimum payload check."""
    img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    img.save(buf, "JPEG", quality=90)
    return buf.getvalue()


def write_jpeg(path: Path, width: int = 200, height: int = 250) -> Path:
    path.write_bytes(make_jpeg(width, height))
    return path


@pytest.fixture
def make_run_config():
    """Build a RunConfig with test defaults, overridable per test."""
    def _make(**overrides) -> RunConfig:
        values = dict(
            base_url=BASE_URL,
            subfolder=SUBFOLDER,
            session_id=SESSION_ID,
            output_name="MSIM4408",
            max_page=200,
            user_agent="pytest-agent",
            referer="https://reader.test/index.php",
            accept="image/*",
            modules=["M1"],
            request_delay=0,
            module_pause=0,
        )
        values.update(overrides)
        return RunConfig(**values)
    return _make


@pytest.fixture
def run_config(make_run_config) -> RunConfig:
    return make_run_config()


@pytest.fixture
def delivery_config() -> DeliveryConfig:
    return DeliveryConfig(
        api_url="https://waha.test",
        api_key="waha-secret",
        session="default",
        recipient="6281234567890",
        caption_template="📚 {name}",
    )


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def no_sleep():
    """Sleep replacement that records the requested delays."""
    calls = []

    def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep
