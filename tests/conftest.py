import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authstore.document_codec import GENERAL_SCHEMA, LICENSE_SCHEMA
from authstore.document_store import DocumentStore
from authstore.license_store import LicenseStore
from authstore.object_storage import InMemoryObjectStore
from authstore.store import AuthStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_document_store(backend, schema, clock, **overrides) -> DocumentStore:
    options = {
        "cache_ttl_s": 3.0,
        "recent_write_window_s": 10.0,
        "post_write_delay_s": 0.0,
        "conflict_retries": 3,
        "clock": clock,
    }
    options.update(overrides)
    return DocumentStore(backend, schema, **options)


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AUTHSTORE_BCRYPT_ROUNDS", "4")
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def general_backend() -> InMemoryObjectStore:
    return InMemoryObjectStore(path="data.json")


@pytest.fixture
def license_backend() -> InMemoryObjectStore:
    return InMemoryObjectStore(path="License.json")


@pytest.fixture
def auth_store(general_backend: InMemoryObjectStore, clock: FakeClock) -> AuthStore:
    return AuthStore(make_document_store(general_backend, GENERAL_SCHEMA, clock))


@pytest.fixture
def license_store(license_backend: InMemoryObjectStore, clock: FakeClock) -> LicenseStore:
    return LicenseStore(make_document_store(license_backend, LICENSE_SCHEMA, clock))
