"""Wiring of the vote-purchase components for one process."""
import logging
from dataclasses import dataclass

from .config import Settings
from .database import create_store
from .gateway import PaymentGateway, PaystackGateway
from .ledger import VoteLedger
from .orchestrator import VoteOrchestrator
from .seed import DEFAULT_CONTESTANTS
from .tally import TallyStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: object
    tally: TallyStore
    ledger: VoteLedger
    gateway: PaymentGateway
    orchestrator: VoteOrchestrator

    async def close(self):
        await self.gateway.close()
        await self.store.close()


def build_services(settings: Settings, store=None, gateway: PaymentGateway = None) -> Services:
    """Build the components; store and gateway can be injected (tests)."""
    store = store or create_store(settings.STORE_BACKEND, settings.redis_url)
    gateway = gateway or PaystackGateway(
        secret_key=settings.PAYSTACK_SECRET_KEY,
        base_url=settings.PAYSTACK_BASE_URL,
        callback_url=settings.PAYMENT_CALLBACK_URL,
        currency=settings.CURRENCY,
        timeout=settings.PAYMENT_HTTP_TIMEOUT,
        session_ttl_seconds=settings.PAYMENT_SESSION_TTL_SECONDS,
    )
    tally = TallyStore(store)
    ledger = VoteLedger(store)
    orchestrator = VoteOrchestrator(
        tally,
        ledger,
        gateway,
        price_per_vote=settings.PRICE_PER_VOTE,
        max_votes=settings.MAX_VOTES_PER_PURCHASE,
        credit_max_attempts=settings.CREDIT_MAX_ATTEMPTS,
        credit_retry_base_delay=settings.CREDIT_RETRY_BASE_DELAY,
        reference_max_attempts=settings.REFERENCE_MAX_ATTEMPTS,
    )
    return Services(store=store, tally=tally, ledger=ledger, gateway=gateway, orchestrator=orchestrator)


async def start_services(services: Services, seed: bool = False) -> Services:
    """Connect the store and optionally seed demonstration contestants."""
    await services.store.initialize()
    if not services.gateway.is_available():
        logger.warning("Payment gateway not configured; purchases will be refused")
    if seed:
        await services.tally.seed(DEFAULT_CONTESTANTS)
    return services
