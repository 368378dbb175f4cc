"""
Test Configuration
==================

Shared fixtures: test settings, a throwaway Apple PKI, an in-memory Redis
double, a SQLite entitlement store and an HTTP client for the app.

Settings are read once at import time, so the environment is populated
before anything from ``entitlements`` is imported.
"""

import base64
import hashlib
import hmac
import json
import os
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


# =============================================================================
# Apple test PKI (root -> intermediate -> leaf)
# =============================================================================

LEAF_MARKER = "1.2.840.113635.100.6.11.1"
INTERMEDIATE_MARKER = "1.2.840.113635.100.6.2.1"


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(
    subject_name: str,
    subject_key,
    issuer_name: str,
    issuer_key,
    is_ca: bool,
    not_after: Optional[datetime] = None,
    marker_oid: Optional[str] = None,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject_name))
        .issuer_name(_name(issuer_name))
        .public_key(subject_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if marker_oid:
        # DER NULL, the value Apple puts in its marker extensions
        builder = builder.add_extension(
            x509.UnrecognizedExtension(x509.ObjectIdentifier(marker_oid), b"\x05\x00"), critical=False
        )
    return builder.sign(issuer_key, hashes.SHA256())


class ApplePKI:
    """Certificates and keys that stand in for Apple's signing chain."""

    def __init__(self) -> None:
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.root = _certificate("Test Apple Root CA", self.root_key, "Test Apple Root CA", self.root_key, True)

        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate = _certificate(
            "Test Apple WWDR", self.intermediate_key, "Test Apple Root CA", self.root_key, True,
            marker_oid=INTERMEDIATE_MARKER,
        )

        self.leaf_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf = _certificate(
            "Test App Store Signing", self.leaf_key, "Test Apple WWDR", self.intermediate_key, False,
            marker_oid=LEAF_MARKER,
        )

    def issue_chain(
        self,
        intermediate_is_ca: bool = True,
        intermediate_marker: Optional[str] = INTERMEDIATE_MARKER,
        leaf_marker: Optional[str] = LEAF_MARKER,
    ):
        """A fresh leaf and intermediate under this root; returns ``(leaf_key, chain)``."""
        intermediate_key = ec.generate_private_key(ec.SECP256R1())
        intermediate = _certificate(
            "Some Developer", intermediate_key, "Test Apple Root CA", self.root_key, intermediate_is_ca,
            marker_oid=intermediate_marker,
        )
        leaf_key = ec.generate_private_key(ec.SECP256R1())
        leaf = _certificate(
            "Test App Store Signing", leaf_key, "Some Developer", intermediate_key, False,
            marker_oid=leaf_marker,
        )
        return leaf_key, [leaf, intermediate, self.root]

    @staticmethod
    def x5c(*certs: x509.Certificate) -> list[str]:
        return [
            base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")
            for cert in certs
        ]

    @staticmethod
    def private_pem(key) -> bytes:
        return key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    def sign(
        self,
        payload: dict[str, Any],
        key=None,
        chain: Optional[list[x509.Certificate]] = None,
    ) -> str:
        """Compact ES256 JWS with an ``x5c`` header, like App Store payloads."""
        from jose import jws

        chain = chain if chain is not None else [self.leaf, self.intermediate, self.root]
        return jws.sign(
            payload,
            self.private_pem(key or self.leaf_key),
            headers={"x5c": self.x5c(*chain)},
            algorithm="ES256",
        )


APPLE_PKI = ApplePKI()

_ROOT_CA_FILE = Path(tempfile.mkdtemp()) / "apple_root_ca.pem"
_ROOT_CA_FILE.write_bytes(APPLE_PKI.root.public_bytes(serialization.Encoding.PEM))


# =============================================================================
# Environment
# =============================================================================

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
APPLE_BUNDLE_ID = "com.example.journal"
APPLE_MONTHLY_PRODUCT = "com.example.journal.premium.monthly"
APPLE_YEARLY_PRODUCT = "com.example.journal.premium.yearly"

os.environ.update({
    "ENVIRONMENT": "test",
    "DATABASE_URL": "",
    "REDIS_URL": "redis://localhost:6379/15",
    "JWT_SECRET": "test-secret-key-that-is-at-least-32-characters",
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": STRIPE_WEBHOOK_SECRET,
    "STRIPE_PRICE_MONTHLY": "price_monthly",
    "STRIPE_PRICE_YEARLY": "price_yearly",
    "STRIPE_PRICE_LIFETIME": "price_lifetime",
    "APPLE_SHARED_SECRET": "apple_shared_secret",
    "APPLE_PRODUCT_PLANS": json.dumps({
        APPLE_MONTHLY_PRODUCT: "monthly",
        APPLE_YEARLY_PRODUCT: "yearly",
    }),
    "APPLE_ROOT_CA_PATH": str(_ROOT_CA_FILE),
    "APPLE_BUNDLE_ID": APPLE_BUNDLE_ID,
    "EXPIRY_SWEEP_ENABLED": "false",
})


from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from entitlements.core.security import create_token_for_user  # noqa: E402
from entitlements.db.base import Base  # noqa: E402
from entitlements.services import cache  # noqa: E402
from entitlements.services.apple_adapter import AppleAdapter  # noqa: E402
from entitlements.services.deduplicator import EventDeduplicator  # noqa: E402
from entitlements.services.entitlement_store import EntitlementStore  # noqa: E402
from entitlements.services.reconciliation import ReconciliationEngine  # noqa: E402
from entitlements.services.stripe_adapter import StripeAdapter  # noqa: E402
from entitlements.services.subscription_service import SubscriptionService  # noqa: E402


# =============================================================================
# Redis double
# =============================================================================

class FakeRedis:
    """The handful of Redis commands the service uses, kept in a dict."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def setex(self, key: str, ttl: int, value: Any) -> bool:
        self.data[key] = str(value)
        self.ttls[key] = int(ttl)
        return True

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.data)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def aclose(self) -> None:
        return None


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    """Every test gets an empty Redis double behind ``get_redis``."""
    client = FakeRedis()
    monkeypatch.setattr(cache, "_redis_client", client)
    return client


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> EntitlementStore:
    return EntitlementStore(session_factory)


@pytest.fixture
def engine(store) -> ReconciliationEngine:
    return ReconciliationEngine(store)


# =============================================================================
# Adapters and service
# =============================================================================

@pytest.fixture
def apple_pki() -> ApplePKI:
    return APPLE_PKI


@pytest.fixture
def untrusted_apple_pki() -> ApplePKI:
    """A well-formed chain that does not end at the configured root."""
    return ApplePKI()


@pytest.fixture
def stripe_adapter() -> StripeAdapter:
    return StripeAdapter()


@pytest.fixture
def apple_adapter() -> AppleAdapter:
    return AppleAdapter()


@pytest.fixture
def service(store, engine, stripe_adapter, apple_adapter) -> SubscriptionService:
    return SubscriptionService(
        store=store,
        engine=engine,
        deduplicator=EventDeduplicator(),
        stripe_adapter=stripe_adapter,
        apple_adapter=apple_adapter,
    )


# =============================================================================
# Stripe payload helpers
# =============================================================================

def stripe_signature(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """``Stripe-Signature`` header value for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_id: str, event_type: str, obj: dict, created: int) -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    })


def stripe_subscription(
    subscription_id: str,
    status: str = "active",
    price_id: str = "price_monthly",
    current_period_end: Optional[int] = None,
    cancel_at_period_end: bool = False,
) -> dict:
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": current_period_end,
        "items": {
            "object": "list",
            "data": [{"id": f"si_{subscription_id}", "price": {"id": price_id}}],
        },
    }


@pytest.fixture
def sign_stripe():
    return stripe_signature


@pytest.fixture
def make_stripe_event():
    return stripe_event


@pytest.fixture
def make_stripe_subscription():
    return stripe_subscription


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_token_for_user('user-1')}"}


@pytest.fixture
async def client(service):
    from entitlements.dependencies import get_subscription_service
    from entitlements.main import app

    app.dependency_overrides[get_subscription_service] = lambda: service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
