# tests/conftest.py
import io
import sys
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]  # repository root
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient  # noqa: E402

from mediavault.app.api import create_app  # noqa: E402
from mediavault.config import StorageSettings  # noqa: E402
from mediavault.services.policy_service import PolicyEnforcer  # noqa: E402
from mediavault.services.probes import ImageProbe  # noqa: E402
from mediavault.services.staging_service import StagingArea  # noqa: E402
from mediavault.services.storage_service import StorageService  # noqa: E402

INTERNAL_KEY = "internal-test-key-0123456789"


def make_png(width: int = 16, height: int = 16, size: int | None = None) -> bytes:
    """Real PNG, optionally padded after IEND to exactly `size` bytes."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (10, 120, 200)).save(buffer, format="PNG")
    data = buffer.getvalue()
    if size is not None:
        assert size >= len(data)
        data += b"\x00" * (size - len(data))
    return data


@pytest.fixture()
def png():
    return make_png


@pytest.fixture()
def settings(tmp_path):
    return StorageSettings(
        storage_path=tmp_path / "storage",
        public_base_url="https://cdn.test/media",
        internal_api_key=INTERNAL_KEY,
        api_key_pepper="test-pepper",
    )


@pytest.fixture()
def enforcer(settings):
    return PolicyEnforcer(settings.rules, [ImageProbe()])


@pytest.fixture()
def staging(settings, enforcer):
    return StagingArea(settings, enforcer)


@pytest.fixture()
def storage(settings, staging):
    return StorageService(settings, staging)


@pytest.fixture()
def app(settings):
    return create_app(settings)


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def auth_headers():
    return {"Authorization": f"ApiKey {INTERNAL_KEY}"}
