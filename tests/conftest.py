"""Pytest fixtures for the vote-purchase unit and API tests.

Everything here runs against the in-memory store and a fake payment gateway,
so no external service is needed.
"""

import asyncio
import hashlib
import hmac
from typing import AsyncGenerator, Dict, Optional

import httpx
import pytest

from services.shared.errors import PaymentSystemUnavailable
from services.vote_api.database import MemoryVoteStore
from services.vote_api.gateway import PaymentGateway, PaymentIntent, VerificationResult
from services.vote_api.ledger import VoteLedger
from services.vote_api.orchestrator import VoteOrchestrator
from services.vote_api.tally import TallyStore

WEBHOOK_SECRET = "sk_test_fake"
ADMIN_KEY = "admin-test-key"


class FakeGateway(PaymentGateway):
    """In-process stand-in for the hosted checkout.

    auto_settle="success" or "cancel" settles each session right after it
    opens, the way the checkout widget would call back.
    """

    def __init__(self):
        super().__init__()
        self.available = True
        self.fail_checkout = False
        self.auto_settle: Optional[str] = None
        self.opened = []
        self.verifications: Dict[str, VerificationResult] = {}
        self._tasks = []

    def is_available(self) -> bool:
        return self.available

    async def initiate(self, intent, on_success, on_cancel):
        session = await super().initiate(intent, on_success, on_cancel)
        if self.auto_settle:
            self._tasks.append(asyncio.create_task(self._settle(session.reference)))
        return session

    async def _settle(self, reference: str):
        session = self.claim_session(reference)
        try:
            if self.auto_settle == "success":
                await session.succeed(f"PSK_{reference}")
            else:
                await session.cancel()
        except Exception:
            # Surfaced to the purchaser through session.outcome()
            pass

    async def _open_checkout(self, intent: PaymentIntent):
        if self.fail_checkout:
            raise PaymentSystemUnavailable()
        self.opened.append(intent)
        return f"https://checkout.test/{intent.reference}", f"AC_{intent.reference}"

    async def verify(self, reference: str) -> VerificationResult:
        result = self.verifications.get(reference)
        if result is None:
            raise PaymentSystemUnavailable()
        return result

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return signature is not None and hmac.compare_digest(sign_payload(payload), signature)


def sign_payload(payload: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha512).hexdigest()


@pytest.fixture
def store() -> MemoryVoteStore:
    return MemoryVoteStore()


@pytest.fixture
def tally(store) -> TallyStore:
    return TallyStore(store)


@pytest.fixture
def ledger(store) -> VoteLedger:
    return VoteLedger(store)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def orchestrator(tally, ledger, gateway) -> VoteOrchestrator:
    return VoteOrchestrator(
        tally,
        ledger,
        gateway,
        price_per_vote=10000,
        max_votes=1000,
        credit_max_attempts=3,
        credit_retry_base_delay=0,
    )


@pytest.fixture
def make_contestant(tally, store):
    """Factory creating a contestant with a given tally and eviction flag."""

    async def _make(name: str, votes: int = 0, evicted: bool = False):
        contestant = await tally.create(name=name, category="Music", location="Lagos")
        if votes:
            await store.increment_vote_count(contestant.id, votes)
        if evicted:
            await tally.set_evicted(contestant.id, True)
        return await tally.get(contestant.id)

    return _make


@pytest.fixture
def signer():
    """Signs webhook bodies the way the payment provider does."""
    return sign_payload


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
async def api_client(store, gateway, orchestrator, tally, ledger, monkeypatch) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client for the vote API, wired to the in-memory fixtures."""
    from services.vote_api.config import settings
    from services.vote_api.container import Services
    from services.vote_api.main import app, limiter

    monkeypatch.setattr(settings, "ADMIN_API_KEYS", [ADMIN_KEY])
    monkeypatch.setattr(limiter, "enabled", False)
    app.state.services = Services(
        store=store,
        tally=tally,
        ledger=ledger,
        gateway=gateway,
        orchestrator=orchestrator,
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.state.services = None


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring a running Redis"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
