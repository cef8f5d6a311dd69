"""
Pytest configuration and fixtures.
"""
import os
import sys

import pytest

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings  # noqa: E402
from app.services.container import ServiceContainer, build_services  # noqa: E402
from tests.fakes import FakeBlobStore, FakeEmailService, FakeStore  # noqa: E402
from tests.helpers import TEST_SALT, as_data_url, make_pdf, make_signature_png  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return Settings(
        SIGNING_TOKEN_SALT=TEST_SALT,
        SIGN_APP_URL="https://sign.example.com",
        SYSTEM_NAME="SignFlow Test Platform",
        ADMIN_API_SECRET="admin-secret",
        INTERNAL_API_SECRET="internal-secret",
        FINALIZATION_MODE="inline",
        GCP_PROJECT_ID="",
        ENVIRONMENT="test",
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def services(settings, store, blob_store, email_service) -> ServiceContainer:
    return build_services(settings, store=store, blob_store=blob_store, email_service=email_service)


@pytest.fixture
def sample_pdf() -> bytes:
    return make_pdf()


@pytest.fixture
def signature_png() -> bytes:
    return make_signature_png()


@pytest.fixture
def signature_data_url(signature_png) -> str:
    return as_data_url(signature_png)
