# flavr/conftest.py
import os
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# Tests run against in-memory SQLite and never validate production env
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")


class FrozenClock:
    """Deterministic UTC clock; pass `clock` wherever a now_fn is accepted."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 3, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="function", autouse=True)
def db():
    """Fresh in-memory database per test; process-wide engines reset."""
    from flavr.core.database import init_engine, create_all_tables, drop_all_tables
    from flavr.features.entitlements.service import set_engine
    from flavr.features.usage.service import set_quota_engine

    engine = init_engine("sqlite://")
    create_all_tables()
    set_engine(None)
    set_quota_engine(None)
    yield engine
    drop_all_tables()
    set_engine(None)
    set_quota_engine(None)


@pytest.fixture(scope="session")
def rsa_private_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def service_account_info(rsa_private_pem):
    return {
        "type": "service_account",
        "project_id": "flavr-test",
        "private_key_id": "test-kid",
        "private_key": rsa_private_pem,
        "client_email": "play-sync@flavr-test.iam.gserviceaccount.com",
        "token_uri": "https://oauth2.googleapis.com/token",
    }


@pytest.fixture
def provider_settings(monkeypatch):
    """Configure every provider secret; tests remove what they need absent."""
    from flavr.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
    monkeypatch.setattr(settings, "APPLE_SHARED_SECRET", "apple-shared-secret")
    monkeypatch.setattr(settings, "APPLE_BUNDLE_ID", "com.flavr.app")
    monkeypatch.setattr(settings, "GOOGLE_WEBHOOK_TOKEN", "push-token")
    monkeypatch.setattr(settings, "GOOGLE_PLAY_PACKAGE_NAME", "com.flavr.app")
    monkeypatch.setattr(settings, "ADMIN_KEY", "admin-secret")
    monkeypatch.setattr(settings, "FREE_RECIPE_LIMIT", 3)
    monkeypatch.setattr(settings, "FREE_IMAGE_LIMIT", 3)
    monkeypatch.setattr(settings, "PSEUDO_RECIPE_LIMIT", 3)
    return settings
