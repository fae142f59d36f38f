"""
Payment gateway adapter.

The adapter opens hosted checkout sessions and reports back through exactly
one of two callbacks per session. It never touches the ledger or the tally.

PaymentSession is a single-shot channel: the first of succeed()/cancel()
runs its bound callback, any later settle attempt raises SessionSettled.
Callers that want the result can await session.outcome().
"""
import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from prometheus_client import Counter

from services.shared.errors import InvalidPaymentIntent, PaymentSystemUnavailable, VotingError
from services.shared.pricing import CURRENCY, payment_intent_errors

logger = logging.getLogger(__name__)

gateway_errors = Counter(
    "payment_gateway_errors_total",
    "Total number of payment gateway call failures",
    ["operation"]
)

SuccessCallback = Callable[[str, str, Optional[int]], Awaitable[Any]]
CancelCallback = Callable[[str], Awaitable[Any]]


class SessionSettled(VotingError):
    code = "session_settled"
    status_code = 409

    def __init__(self, reference: str):
        super().__init__(f"Payment session {reference} has already been settled", {"reference": reference})


@dataclass
class PaymentIntent:
    """What the purchaser is asked to pay."""
    email: str
    amount: int
    reference: str

    def validate(self) -> None:
        """Raise InvalidPaymentIntent listing every violated constraint."""
        errors = payment_intent_errors(self.email, self.amount, self.reference)
        if errors:
            raise InvalidPaymentIntent(errors)


@dataclass
class VerificationResult:
    """Provider's view of a transaction, used by reconciliation."""
    reference: str
    status: str
    provider_reference: Optional[str] = None
    amount: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "abandoned", "reversed")


class PaymentSession:
    """One hosted checkout for one payment intent."""

    def __init__(
        self,
        intent: PaymentIntent,
        on_success: SuccessCallback,
        on_cancel: CancelCallback,
        authorization_url: Optional[str] = None,
        access_code: Optional[str] = None,
    ):
        self.intent = intent
        self.authorization_url = authorization_url
        self.access_code = access_code
        self.opened_at = time.monotonic()
        self._on_success = on_success
        self._on_cancel = on_cancel
        self._settled = False
        self._outcome: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def reference(self) -> str:
        return self.intent.reference

    @property
    def settled(self) -> bool:
        return self._settled

    async def succeed(self, provider_reference: str, amount: Optional[int] = None) -> Any:
        """
        Fire the success callback with the amount the provider reports, if known.

        Returns whatever the callback returns.
        """
        self._claim()
        return await self._fire(self._on_success(self.reference, provider_reference, amount))

    async def cancel(self) -> Any:
        """Fire the cancel callback."""
        self._claim()
        return await self._fire(self._on_cancel(self.reference))

    async def outcome(self) -> Any:
        """Wait for the settled callback's result (or its exception)."""
        return await asyncio.shield(self._outcome)

    def _claim(self) -> None:
        if self._settled:
            raise SessionSettled(self.reference)
        self._settled = True

    async def _fire(self, callback: Awaitable[Any]) -> Any:
        try:
            result = await callback
        except Exception as e:
            if not self._outcome.done():
                self._outcome.set_exception(e)
                # Observed here so an unawaited outcome does not warn
                self._outcome.exception()
            raise
        if not self._outcome.done():
            self._outcome.set_result(result)
        return result


class PaymentGateway:
    """
    Base adapter: session bookkeeping and the initiate() contract.

    Subclasses implement _open_checkout (and optionally verify).
    """

    def __init__(self, session_ttl_seconds: int = 3600):
        self.session_ttl_seconds = session_ttl_seconds
        self._sessions: Dict[str, PaymentSession] = {}

    def is_available(self) -> bool:
        return True

    async def initiate(
        self,
        intent: PaymentIntent,
        on_success: SuccessCallback,
        on_cancel: CancelCallback,
    ) -> PaymentSession:
        """
        Open a hosted checkout for the intent.

        Raises:
            InvalidPaymentIntent: If the intent violates any constraint
            PaymentSystemUnavailable: If the provider cannot be reached
        """
        intent.validate()
        if not self.is_available():
            raise PaymentSystemUnavailable()

        self._prune_sessions()
        authorization_url, access_code = await self._open_checkout(intent)
        session = PaymentSession(
            intent,
            on_success,
            on_cancel,
            authorization_url=authorization_url,
            access_code=access_code,
        )
        self._sessions[intent.reference] = session
        logger.info(f"Payment session opened: reference={intent.reference}, amount={intent.amount}")
        return session

    def claim_session(self, reference: str) -> Optional[PaymentSession]:
        """Remove and return the live session for a reference, if this process holds one."""
        session = self._sessions.pop(reference, None)
        if session is not None and session.settled:
            return None
        return session

    def has_session(self, reference: str) -> bool:
        return reference in self._sessions

    async def verify(self, reference: str) -> VerificationResult:
        raise NotImplementedError

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return False

    async def close(self):
        pass

    async def _open_checkout(self, intent: PaymentIntent) -> Tuple[Optional[str], Optional[str]]:
        raise NotImplementedError

    def _prune_sessions(self) -> None:
        """Forget sessions nobody settled within the TTL; their entries stay pending."""
        cutoff = time.monotonic() - self.session_ttl_seconds
        expired = [ref for ref, s in self._sessions.items() if s.opened_at < cutoff]
        for reference in expired:
            del self._sessions[reference]
        if expired:
            logger.warning(f"Dropped {len(expired)} unsettled payment sessions past TTL")


class PaystackGateway(PaymentGateway):
    """Paystack hosted checkout over the REST API."""

    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str = "https://api.paystack.co",
        callback_url: Optional[str] = None,
        currency: str = CURRENCY,
        timeout: float = 10.0,
        session_ttl_seconds: int = 3600,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(session_ttl_seconds=session_ttl_seconds)
        self.secret_key = secret_key
        self.callback_url = callback_url
        self.currency = currency
        self.client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def is_available(self) -> bool:
        return bool(self.secret_key) and not self.client.is_closed

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    async def _open_checkout(self, intent: PaymentIntent) -> Tuple[Optional[str], Optional[str]]:
        payload = {
            "email": intent.email,
            "amount": intent.amount,
            "reference": intent.reference,
            "currency": self.currency,
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url

        data = await self._call("initialize", "POST", "/transaction/initialize", json=payload)
        return data.get("authorization_url"), data.get("access_code")

    async def verify(self, reference: str) -> VerificationResult:
        """Ask Paystack for the current state of a transaction."""
        data = await self._call("verify", "GET", f"/transaction/verify/{reference}")
        provider_id = data.get("id")
        return VerificationResult(
            reference=data.get("reference", reference),
            status=data.get("status", "unknown"),
            provider_reference=str(provider_id) if provider_id is not None else None,
            amount=data.get("amount"),
        )

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Check X-Paystack-Signature: HMAC-SHA512 of the raw body with the secret key."""
        if not self.secret_key or not signature:
            return False
        expected = hmac.new(self.secret_key.encode(), payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)

    async def close(self):
        await self.client.aclose()

    async def _call(self, operation: str, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, url, headers=self._headers, **kwargs)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            gateway_errors.labels(operation=operation).inc()
            logger.error(f"Paystack {operation} failed: {e}")
            raise PaymentSystemUnavailable()

        if not body.get("status"):
            gateway_errors.labels(operation=operation).inc()
            logger.error(f"Paystack {operation} rejected: {body.get('message')}")
            raise PaymentSystemUnavailable()
        return body.get("data") or {}
