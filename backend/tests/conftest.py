"""Pytest configuration and fixtures for Akshayapatra tests.

Every test runs against an in-memory local-store backend. Supabase and
PhonePe are replaced by the fakes below (or by ``httpx.MockTransport`` in
the client tests).
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from akshayapatra.auth.deps import SessionUser
from akshayapatra.auth.jwt import create_access_token
from akshayapatra.main import app
from akshayapatra.middleware.exceptions import ResourceNotFoundError, UpstreamServiceError
from akshayapatra.schemas.payment import PaymentInitiation
from akshayapatra.schemas.profile import CompletionStatus, SchemeSummary, UserProfileSnapshot
from akshayapatra.services.phonepe import get_payment_gateway
from akshayapatra.services.profile import completion_from_profile, get_profile_service
from akshayapatra.storage.backends import MemoryBackend, set_backend
from akshayapatra.storage.local import LocalStore, store_for_user
from akshayapatra.wizard.session import ProfileSetupWizard

USER_ID = "2b9c4f0e-5d7a-4c1e-9f65-0a1b2c3d4e5f"


# ── Fakes ────────────────────────────────────────────────────────

class FakeProfileService:
    """In-memory stand-in for ProfileService that records every call."""

    def __init__(self, profile: UserProfileSnapshot | None = None, user_id: str = USER_ID):
        self.user_id = user_id
        self.profile = profile
        self.calls: list[tuple[str, dict]] = []
        self.failing: set[str] = set()
        self.completion: CompletionStatus | None = None
        self.flags_row: dict = {}
        self.schemes: list[SchemeSummary] = []

    def _call(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if name in self.failing:
            raise UpstreamServiceError("supabase", f"{name} failed")

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def ensure_profile(self, full_name, phone=None, referral_code=None, scheme_id=None):
        self._call(
            "ensure_profile",
            full_name=full_name, phone=phone, referral_code=referral_code, scheme_id=scheme_id,
        )
        if self.profile is None:
            self.profile = UserProfileSnapshot(
                id=self.user_id, full_name=full_name, phone_number=phone
            )
        if scheme_id and not self.profile.initial_scheme_id:
            self.profile = self.profile.model_copy(update={"initial_scheme_id": scheme_id})

    async def attach_referral_by_code(self, referral_code):
        self._call("attach_referral_by_code", referral_code=referral_code)

    async def fetch_profile(self):
        self._call("fetch_profile")
        return self.profile

    async def update_profile(self, updates):
        self._call("update_profile", **updates)
        if self.profile is None:
            raise ResourceNotFoundError("Profile", self.user_id)
        self.profile = self.profile.model_copy(update=updates)
        return self.profile

    async def check_completion(self, profile=None):
        self._call("check_completion")
        if self.completion is not None:
            return self.completion
        return completion_from_profile(profile or self.profile)

    async def registration_fee_needed(self, profile):
        self._call("registration_fee_needed")
        current = profile or self.profile
        return not (current and current.is_phone_verified)

    async def consume_update_flags(self, clear=False):
        self._call("consume_update_flags", clear=clear)
        return dict(self.flags_row)

    async def list_schemes(self):
        self._call("list_schemes")
        return list(self.schemes)


class FakeGateway:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.initiated: list[dict] = []
        self.settled: list[str] = []

    async def initiate_registration_payment(self, scheme_id, amount=None, origin=None):
        self.initiated.append({"scheme_id": scheme_id, "amount": amount, "origin": origin})
        return PaymentInitiation(
            txid="REGabc1234567lz0k3",
            invoice_id="inv-1",
            redirect_url="https://mercury.phonepe.com/pay/REGabc1234567lz0k3",
        )

    async def settle(self, txid):
        self.settled.append(txid)
        return self.succeed


def complete_profile(**overrides) -> UserProfileSnapshot:
    data = {
        "id": USER_ID,
        "full_name": "Asha Rao",
        "phone_number": "9876543210",
        "country": "India",
        "state": "Kerala",
        "district": "Ernakulam",
        "street_address": "12 MG Road",
        "postal_code": "682001",
        "initial_scheme_id": "scheme-gold",
        "is_phone_verified": True,
    }
    data.update(overrides)
    return UserProfileSnapshot(**data)


# ── Store / wizard fixtures ──────────────────────────────────────

@pytest.fixture(autouse=True)
def memory_backend() -> MemoryBackend:
    """Route every LocalStore (including the app's) to a fresh dict."""
    backend = MemoryBackend()
    set_backend(backend)
    yield backend
    set_backend(None)


@pytest.fixture
def session_user() -> SessionUser:
    return SessionUser(
        id=USER_ID,
        access_token="test-token",
        email="asha@example.com",
        phone="919876543210",
        metadata={"full_name": "Asha Rao"},
    )


@pytest.fixture
def store(memory_backend: MemoryBackend) -> LocalStore:
    return store_for_user(USER_ID, memory_backend)


@pytest.fixture
def profiles() -> FakeProfileService:
    return FakeProfileService()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def wizard(session_user, store, profiles, gateway) -> ProfileSetupWizard:
    return ProfileSetupWizard(
        session_user, store, profiles, gateway, advance_delay_ms=0, dashboard_path="/"
    )


# ── HTTP fixtures ────────────────────────────────────────────────

@pytest.fixture
def test_token() -> str:
    return create_access_token(
        user_id=USER_ID,
        email="asha@example.com",
        phone="919876543210",
        user_metadata={"full_name": "Asha Rao"},
    )


@pytest.fixture
def auth_headers(test_token: str) -> dict:
    return {"Authorization": f"Bearer {test_token}"}


@pytest_asyncio.fixture
async def client(profiles, gateway) -> AsyncGenerator[AsyncClient, None]:
    """Test client with Supabase and PhonePe replaced by fakes."""
    app.dependency_overrides[get_profile_service] = lambda: profiles
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "cache: Redis and local-store tests")
    config.addinivalue_line("markers", "integration: Integration tests")
