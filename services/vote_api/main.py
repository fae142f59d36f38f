"""
FastAPI application for the paid vote-purchase API.

Hosts the contestant standings, the purchase workflow (start, cancel,
provider callback and webhook) and a small administrative surface behind a
static key allow-list.
"""
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from services.shared.errors import (
    ConsistencyError,
    ContestantNotFound,
    DuplicateCompletion,
    LedgerEntryMissing,
    QuantityTooLarge,
    VotingError,
)
from services.shared.models import Contestant, VoteTransaction
from services.shared.pricing import format_price, price

from .audit import audit_ledger
from .config import settings
from .container import Services, build_services, start_services
from .models import (
    ContestantCreate,
    ContestantResponse,
    ErrorResponse,
    EvictionUpdate,
    HealthResponse,
    PriceQuote,
    PurchaseRequest,
    PurchaseResponse,
    ReconciliationReport,
    SettlementResponse,
    StandingsResponse,
    TransactionResponse,
)
from .ranking import RankedContestant, rank_contestants

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Prometheus metrics
api_errors = Counter(
    "api_errors_total",
    "Total number of API errors",
    ["error_type"]
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

API_PREFIX = f"/api/{settings.API_VERSION}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    try:
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        await start_services(app.state.services, seed=settings.SEED_ON_STARTUP)
        logger.info(f"{settings.SERVICE_NAME} started successfully")

    except Exception as e:
        logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
        raise

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")

    try:
        await app.state.services.close()
        logger.info(f"{settings.SERVICE_NAME} shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI app
app = FastAPI(
    title="Vote Purchase API",
    description="API for buying votes for contestants and viewing the standings",
    version=settings.API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(VotingError)
async def voting_error_handler(request: Request, exc: VotingError):
    api_errors.labels(error_type=exc.code).inc()
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    api_errors.labels(error_type="validation_error").inc()
    errors = [
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(
            error="validation_error",
            message="Invalid request",
            details={"errors": errors},
        ).model_dump()
    )


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    start = time.perf_counter()
    response = await call_next(request)

    # Route template keeps references and ids out of the label values
    route = request.scope.get("route")
    request_duration.labels(
        method=request.method,
        endpoint=getattr(route, "path", request.url.path),
        status=response.status_code
    ).observe(time.perf_counter() - start)

    return response


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Static allow-list check for administrative endpoints."""
    if not x_admin_key or x_admin_key not in settings.ADMIN_API_KEYS:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator key required"
        )


def contestant_response(contestant: Contestant, placed: Optional[RankedContestant] = None) -> ContestantResponse:
    return ContestantResponse(
        **contestant.to_dict(),
        rank=placed.rank if placed else None,
        badge=placed.badge if placed else None,
    )


def transaction_response(entry: VoteTransaction) -> TransactionResponse:
    return TransactionResponse.model_validate(entry.to_dict())


# ═══════════════════════════════════════════════════════════════════
# STANDINGS AND PRICING
# ═══════════════════════════════════════════════════════════════════

@app.get(
    f"{API_PREFIX}/contestants",
    response_model=StandingsResponse
)
async def get_standings(services: Services = Depends(get_services)) -> StandingsResponse:
    """
    Contestants in display order.

    Active contestants by votes (top three get gold, silver and bronze),
    then evicted contestants, who never receive a rank.
    """
    standings = rank_contestants(await services.tally.snapshot())
    return StandingsResponse(
        contestants=[contestant_response(r.contestant, r) for r in standings.display_order],
        total_votes=standings.total_votes,
        active_count=len(standings.active),
        evicted_count=len(standings.evicted),
    )


@app.get(
    f"{API_PREFIX}/contestants/{{contestant_id}}",
    response_model=ContestantResponse,
    responses={404: {"model": ErrorResponse, "description": "Contestant not found"}}
)
async def get_contestant(contestant_id: str, services: Services = Depends(get_services)) -> ContestantResponse:
    """Get a single contestant with its current placing."""
    standings = rank_contestants(await services.tally.snapshot())
    for placed in standings.display_order:
        if placed.contestant.id == contestant_id:
            return contestant_response(placed.contestant, placed)
    raise ContestantNotFound(contestant_id)


@app.get(
    f"{API_PREFIX}/pricing",
    response_model=PriceQuote,
    responses={400: {"model": ErrorResponse, "description": "Invalid quantity"}}
)
async def get_price(votes: int = Query(..., description="Number of votes")) -> PriceQuote:
    """Quote the charge for a number of votes."""
    amount = price(votes, settings.PRICE_PER_VOTE)
    if votes > settings.MAX_VOTES_PER_PURCHASE:
        raise QuantityTooLarge(votes, settings.MAX_VOTES_PER_PURCHASE)
    return PriceQuote(
        vote_count=votes,
        price_per_vote=settings.PRICE_PER_VOTE,
        amount=amount,
        formatted_amount=format_price(amount, settings.CURRENCY),
        currency=settings.CURRENCY,
    )


# ═══════════════════════════════════════════════════════════════════
# PURCHASE WORKFLOW
# ═══════════════════════════════════════════════════════════════════

@app.post(
    f"{API_PREFIX}/votes",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid purchase request"},
        404: {"model": ErrorResponse, "description": "Contestant not found"},
        409: {"model": ErrorResponse, "description": "Contestant evicted"},
        429: {"description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Payment system unavailable"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def start_purchase(
    request: Request,
    purchase: PurchaseRequest,
    services: Services = Depends(get_services)
) -> PurchaseResponse:
    """
    Start a vote purchase.

    - **contestant_id**: Contestant receiving the votes
    - **email**: Purchaser email
    - **vote_count**: Votes to buy (1 to the configured maximum)

    Records a pending ledger entry and opens a checkout session. Votes are
    credited only once the payment provider confirms the charge.
    """
    attempt = await services.orchestrator.start_purchase(
        purchase.contestant_id, purchase.email, purchase.vote_count
    )
    session = attempt.session
    return PurchaseResponse(
        reference=attempt.reference,
        status="pending",
        contestant_id=attempt.contestant_id,
        contestant_name=attempt.contestant_name,
        vote_count=attempt.vote_count,
        amount=attempt.amount,
        formatted_amount=format_price(attempt.amount, settings.CURRENCY),
        currency=settings.CURRENCY,
        authorization_url=session.authorization_url,
        access_code=session.access_code,
        public_key=settings.PAYSTACK_PUBLIC_KEY,
    )


@app.get(
    f"{API_PREFIX}/votes/{{reference}}",
    response_model=TransactionResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown reference"}}
)
async def get_purchase(reference: str, services: Services = Depends(get_services)) -> TransactionResponse:
    """Get the ledger entry for a purchase."""
    entry = await services.ledger.get(reference)
    if entry is None:
        raise LedgerEntryMissing(reference)
    return transaction_response(entry)


@app.post(
    f"{API_PREFIX}/votes/{{reference}}/cancel",
    response_model=TransactionResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown reference"},
        409: {"model": ErrorResponse, "description": "Purchase already completed"}
    }
)
async def cancel_purchase(reference: str, services: Services = Depends(get_services)) -> TransactionResponse:
    """The purchaser closed the checkout without paying."""
    entry = await services.orchestrator.cancel_payment(reference)
    return transaction_response(entry)


@app.get(
    f"{API_PREFIX}/payments/callback",
    response_model=SettlementResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown reference"},
        409: {"model": ErrorResponse, "description": "Already cancelled, or charged a different amount"},
        502: {"model": ErrorResponse, "description": "Paid but not yet credited"},
        503: {"model": ErrorResponse, "description": "Payment provider unreachable"}
    }
)
async def payment_callback(
    reference: str = Query(..., description="Transaction reference"),
    services: Services = Depends(get_services)
) -> SettlementResponse:
    """
    Provider redirect after checkout.

    The redirect itself is not trusted: the transaction is re-queried with
    the provider before anything is settled.
    """
    entry = await services.ledger.get(reference)
    if entry is None:
        raise LedgerEntryMissing(reference)
    if not entry.is_pending:
        return SettlementResponse(
            reference=reference,
            status=entry.status,
            message="Payment already processed",
            contestant_id=entry.contestant_id,
        )

    verification = await services.gateway.verify(reference)
    if verification.succeeded:
        try:
            result = await services.orchestrator.confirm_payment(
                reference, verification.provider_reference, verification.amount
            )
        except DuplicateCompletion:
            # The webhook got there first
            return SettlementResponse(
                reference=reference,
                status="completed",
                message="Payment already processed",
                contestant_id=entry.contestant_id,
            )
        return SettlementResponse(
            reference=reference,
            status="completed",
            message=f"{result.votes_added} votes credited to {result.contestant_name}",
            contestant_id=result.contestant_id,
            vote_count=result.vote_count,
        )

    if verification.failed:
        cancelled = await services.orchestrator.cancel_payment(reference)
        return SettlementResponse(
            reference=reference,
            status=cancelled.status,
            message="Payment was not completed",
            contestant_id=entry.contestant_id,
        )

    return SettlementResponse(
        reference=reference,
        status="pending",
        message=f"Payment status is '{verification.status}'",
        contestant_id=entry.contestant_id,
    )


@app.post(f"{API_PREFIX}/payments/webhook")
async def payment_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services)
):
    """
    Signed provider events.

    charge.success settles the purchase. Replays and other protocol
    anomalies are acknowledged so the provider stops retrying; they are
    already logged and counted. Credit failures return 5xx so it retries.
    """
    payload = await request.body()
    if not services.gateway.verify_signature(payload, x_paystack_signature):
        api_errors.labels(error_type="bad_webhook_signature").inc()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body is not JSON"
        )

    if event.get("event") != "charge.success":
        return {"status": "ignored"}

    data = event.get("data") or {}
    reference = data.get("reference")
    if not reference or data.get("id") is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook event has no reference or transaction id"
        )

    try:
        result = await services.orchestrator.confirm_payment(reference, str(data["id"]), data.get("amount"))
    except ConsistencyError as e:
        return {"status": "acknowledged", "anomaly": e.code}

    return {"status": "credited", "reference": reference, "vote_count": result.vote_count}


# ═══════════════════════════════════════════════════════════════════
# ADMINISTRATION
# ═══════════════════════════════════════════════════════════════════

@app.post(
    f"{API_PREFIX}/admin/contestants",
    response_model=ContestantResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)]
)
async def create_contestant(body: ContestantCreate, services: Services = Depends(get_services)) -> ContestantResponse:
    """Add a contestant with no votes."""
    contestant = await services.tally.create(**body.model_dump())
    return contestant_response(contestant)


@app.patch(
    f"{API_PREFIX}/admin/contestants/{{contestant_id}}/eviction",
    response_model=ContestantResponse,
    dependencies=[Depends(require_admin)],
    responses={404: {"model": ErrorResponse, "description": "Contestant not found"}}
)
async def set_eviction(
    contestant_id: str,
    body: EvictionUpdate,
    services: Services = Depends(get_services)
) -> ContestantResponse:
    """Evict or reinstate a contestant. Vote history is kept."""
    contestant = await services.tally.set_evicted(contestant_id, body.evicted)
    if contestant is None:
        raise ContestantNotFound(contestant_id)
    return contestant_response(contestant)


@app.delete(
    f"{API_PREFIX}/admin/contestants/{{contestant_id}}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
    responses={
        404: {"model": ErrorResponse, "description": "Contestant not found"},
        409: {"model": ErrorResponse, "description": "Contestant has vote transactions"}
    }
)
async def delete_contestant(contestant_id: str, services: Services = Depends(get_services)):
    """Delete a contestant that no ledger entry refers to."""
    # The store refuses with ContestantInUse while ledger entries exist
    if not await services.tally.delete(contestant_id):
        raise ContestantNotFound(contestant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get(
    f"{API_PREFIX}/admin/ledger/stale",
    response_model=List[TransactionResponse],
    dependencies=[Depends(require_admin)]
)
async def get_stale_entries(
    older_than: Optional[int] = Query(default=None, ge=0, description="Age in seconds"),
    services: Services = Depends(get_services)
) -> List[TransactionResponse]:
    """Pending ledger entries older than the threshold."""
    threshold = settings.STALE_PENDING_SECONDS if older_than is None else older_than
    entries = await services.ledger.stale_pending(threshold)
    return [transaction_response(e) for e in entries]


@app.get(
    f"{API_PREFIX}/admin/reconciliation",
    response_model=ReconciliationReport,
    dependencies=[Depends(require_admin)]
)
async def get_reconciliation(services: Services = Depends(get_services)) -> ReconciliationReport:
    """Stale pending entries plus contestants whose tally disagrees with the ledger."""
    report = await audit_ledger(services.tally, services.ledger, settings.STALE_PENDING_SECONDS)
    return ReconciliationReport(
        stale_pending=[transaction_response(e) for e in report.stale_pending],
        drift=[d.to_dict() for d in report.drift],
        checked_contestants=report.checked_contestants,
        generated_at=report.generated_at,
    )


# ═══════════════════════════════════════════════════════════════════
# OPERATIONS
# ═══════════════════════════════════════════════════════════════════

@app.get(
    f"{API_PREFIX}/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check(services: Services = Depends(get_services)) -> HealthResponse:
    """
    Check health of the service and its dependencies.

    Verifies:
    - The document store connection
    - Payment gateway availability

    Returns overall health status and individual service statuses.
    """
    service_status = {}

    try:
        store_healthy = await services.store.check_health()
        service_status["store"] = "connected" if store_healthy else "disconnected"
    except Exception as e:
        logger.error(f"Store health check error: {e}")
        service_status["store"] = "error"

    service_status["payments"] = "available" if services.gateway.is_available() else "unavailable"

    all_healthy = service_status["store"] == "connected" and service_status["payments"] == "available"
    overall_status = "healthy" if all_healthy else "unhealthy"
    status_code = status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE

    response = HealthResponse(
        status=overall_status,
        services=service_status,
        timestamp=datetime.now(timezone.utc)
    )

    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "standings": f"{API_PREFIX}/contestants",
            "pricing": f"{API_PREFIX}/pricing?votes={{n}}",
            "purchase": f"{API_PREFIX}/votes",
            "purchase_status": f"{API_PREFIX}/votes/{{reference}}",
            "payment_callback": f"{API_PREFIX}/payments/callback",
            "payment_webhook": f"{API_PREFIX}/payments/webhook",
            "health": f"{API_PREFIX}/health",
            "metrics": "/metrics"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.vote_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
