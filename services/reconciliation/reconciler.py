"""
Reconciliation worker for vote transactions.

Periodically looks for ledger entries stuck in pending (a lost payment
callback, or a credit step that kept failing), re-queries the payment
provider for each one and drives it to its final state. Also reports
contestants whose tally disagrees with their completed ledger entries.
Drift is reported only, never corrected.
"""
import asyncio
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, start_http_server

from services.shared.errors import (
    AmountMismatch,
    ConsistencyError,
    ContestantNotFound,
    CreditingFailed,
    PaymentSystemUnavailable,
    StoreUnavailable,
)
from services.shared.models import VoteTransaction
from services.vote_api.audit import audit_ledger
from services.vote_api.database import create_store
from services.vote_api.gateway import PaymentGateway, PaystackGateway
from services.vote_api.ledger import VoteLedger
from services.vote_api.orchestrator import VoteOrchestrator
from services.vote_api.tally import TallyStore

from .config import config

logger = logging.getLogger(__name__)

# Prometheus metrics
stale_pending_entries = Gauge(
    'stale_pending_entries',
    'Pending ledger entries older than the staleness threshold'
)

tally_drift_contestants = Gauge(
    'tally_drift_contestants',
    'Contestants whose tally differs from their completed ledger votes'
)

reconciliation_duration = Gauge(
    'reconciliation_run_duration_seconds',
    'Time taken by the last reconciliation run'
)

redrive_outcomes = Counter(
    'reconciliation_redrives_total',
    'Stale pending entries re-driven, by outcome',
    ['outcome']
)

reconciliation_errors = Counter(
    'reconciliation_errors_total',
    'Total number of failed reconciliation runs',
    ['error_type']
)


@dataclass
class RunSummary:
    stale: int = 0
    drift: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def record(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1


class Reconciler:
    """Finds and re-drives stale pending ledger entries."""

    def __init__(
        self,
        tally: TallyStore,
        ledger: VoteLedger,
        gateway: PaymentGateway,
        orchestrator: VoteOrchestrator,
        stale_after_seconds: float = 1800,
        verify_with_provider: bool = True,
        interval_seconds: float = 300,
    ):
        self.tally = tally
        self.ledger = ledger
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.stale_after_seconds = stale_after_seconds
        self.verify_with_provider = verify_with_provider
        self.interval_seconds = interval_seconds
        self.running = True

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.running = False

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    async def run_once(self, now: Optional[float] = None) -> RunSummary:
        """One pass: audit, then re-drive every stale entry if enabled."""
        started = time.time()
        report = await audit_ledger(self.tally, self.ledger, self.stale_after_seconds, now=now)

        summary = RunSummary(stale=len(report.stale_pending), drift=len(report.drift))
        stale_pending_entries.set(summary.stale)
        tally_drift_contestants.set(summary.drift)

        if report.stale_pending:
            if self.verify_with_provider and self.gateway.is_available():
                for entry in report.stale_pending:
                    summary.record(await self.redrive(entry))
            else:
                logger.warning(
                    f"{summary.stale} stale pending entries left for manual review "
                    f"(provider verification disabled or unavailable)"
                )

        reconciliation_duration.set(time.time() - started)
        logger.info(
            f"Reconciliation run: stale={summary.stale}, drift={summary.drift}, "
            f"outcomes={summary.outcomes}"
        )
        return summary

    async def redrive(self, entry: VoteTransaction) -> str:
        """
        Ask the provider what happened to a pending entry and act on it.

        Returns the outcome label: credited, cancelled, left_pending,
        provider_unreachable, amount_mismatch, anomaly or credit_failed.
        """
        outcome = await self._redrive(entry)
        redrive_outcomes.labels(outcome=outcome).inc()
        return outcome

    async def _redrive(self, entry: VoteTransaction) -> str:
        reference = entry.reference
        try:
            verification = await self.gateway.verify(reference)
        except PaymentSystemUnavailable:
            logger.warning(f"Could not verify {reference} with the provider; will retry next run")
            return "provider_unreachable"

        if verification.succeeded:
            try:
                result = await self.orchestrator.handle_success(
                    reference, verification.provider_reference, verification.amount
                )
            except AmountMismatch:
                # Logged by the orchestrator; left pending for manual review
                return "amount_mismatch"
            except ConsistencyError:
                # Settled elsewhere since the audit; already logged by the orchestrator
                return "anomaly"
            except (CreditingFailed, ContestantNotFound):
                return "credit_failed"
            logger.info(f"Recovered payment {reference}: {result.votes_added} votes credited")
            return "credited"

        if verification.failed:
            try:
                await self.orchestrator.handle_cancel(reference)
            except ConsistencyError:
                return "anomaly"
            logger.info(f"Closed abandoned payment {reference} ({verification.status})")
            return "cancelled"

        logger.info(f"Payment {reference} still '{verification.status}' at the provider")
        return "left_pending"

    async def run(self):
        """Run until a shutdown signal."""
        while self.running:
            try:
                await self.run_once()
            except StoreUnavailable as e:
                logger.error(f"Store unavailable during reconciliation: {e.message}")
                reconciliation_errors.labels(error_type='store').inc()
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                reconciliation_errors.labels(error_type='unexpected').inc()

            # Sleep in short steps so a signal stops the loop promptly
            deadline = time.monotonic() + self.interval_seconds
            while self.running and time.monotonic() < deadline:
                await asyncio.sleep(min(1.0, max(0.0, deadline - time.monotonic())))


def build_reconciler(store=None, gateway: Optional[PaymentGateway] = None) -> Reconciler:
    """Wire a Reconciler from the worker configuration."""
    store = store or create_store(config.STORE_BACKEND, config.redis_url)
    gateway = gateway or PaystackGateway(
        secret_key=config.PAYSTACK_SECRET_KEY,
        base_url=config.PAYSTACK_BASE_URL,
        currency=config.CURRENCY,
        timeout=config.PAYMENT_HTTP_TIMEOUT,
    )
    tally = TallyStore(store)
    ledger = VoteLedger(store)
    orchestrator = VoteOrchestrator(
        tally,
        ledger,
        gateway,
        price_per_vote=config.PRICE_PER_VOTE,
        credit_max_attempts=config.CREDIT_MAX_ATTEMPTS,
        credit_retry_base_delay=config.CREDIT_RETRY_BASE_DELAY,
    )
    return Reconciler(
        tally,
        ledger,
        gateway,
        orchestrator,
        stale_after_seconds=config.STALE_PENDING_SECONDS,
        verify_with_provider=config.RECONCILE_VERIFY_WITH_PROVIDER,
        interval_seconds=config.RECONCILE_INTERVAL_SECONDS,
    )


async def main():
    """Main entry point."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    logger.info("="*60)
    logger.info("Starting Vote Reconciliation Service")
    logger.info(f"Store: {config.STORE_BACKEND} ({config.REDIS_HOST}:{config.REDIS_PORT})")
    logger.info(f"Interval: {config.RECONCILE_INTERVAL_SECONDS}s")
    logger.info(f"Stale after: {config.STALE_PENDING_SECONDS}s")
    logger.info(f"Verify with provider: {config.RECONCILE_VERIFY_WITH_PROVIDER}")
    logger.info("="*60)

    reconciler = build_reconciler()
    reconciler.install_signal_handlers()

    try:
        logger.info(f"Starting Prometheus metrics server on port {config.PROMETHEUS_PORT}")
        start_http_server(config.PROMETHEUS_PORT)
        await reconciler.ledger.store.initialize()
        await reconciler.run()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        await reconciler.gateway.close()
        await reconciler.ledger.store.close()
        logger.info("Reconciler shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
