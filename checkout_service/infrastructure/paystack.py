"""Paystack payment gateway client.

Amounts cross this boundary in the gateway's minor unit (kobo); the rest of
the service works in major units (naira) as ``Decimal``.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Any, Dict
import hashlib
import hmac
import httpx

from checkout_service.core_settings import get_settings, Settings
from checkout_service.domain.errors import GatewayUnavailable
from shared.core import get_logger

logger = get_logger(__name__)


def to_minor_units(amount) -> int:
    """Convert a major-unit amount to the gateway's integer minor unit."""
    value = Decimal(str(amount))
    if value.is_nan():
        raise ValueError("Invalid amount: must be a number")
    if value < 0:
        raise ValueError("Invalid amount: cannot be negative")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class VerifyResult:
    reference: str
    status: str  # success | failed | abandoned
    amount: int
    gateway_response: Optional[str]
    transaction_id: Optional[str]
    paid_at: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class RefundUnavailable(GatewayUnavailable):
    code = "refund_unavailable"


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        callback_url: Optional[str] = None,
        currency: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.callback_url = callback_url
        self.currency = currency
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PaystackClient":
        settings = settings or get_settings()
        return cls(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.PAYSTACK_TIMEOUT,
            callback_url=f"{settings.FRONTEND_URL}/payment/callback",
            currency=settings.CURRENCY,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
            transport=self.transport,
        )

    def _request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error(f"Paystack {operation} error: {exc}")
            raise GatewayUnavailable(f"Failed to {operation}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or not body.get("status"):
            logger.error(
                f"Paystack {operation} rejected",
                extra={"extra_fields": {"status_code": response.status_code, "body": body}},
            )
            message = body.get("message") or f"Failed to {operation}"
            if operation == "initiate refund" and response.status_code in (400, 404):
                raise RefundUnavailable(
                    "Automatic refunds not available. Please process refund manually through Paystack dashboard.",
                    upstream_status=response.status_code,
                )
            raise GatewayUnavailable(message, upstream_status=response.status_code)
        return body

    def initialize(self, email: str, amount, reference: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        payload = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "metadata": dict(metadata or {}),
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
        if self.currency:
            payload["currency"] = self.currency
        body = self._request("POST", "/transaction/initialize", "initialize payment", json=payload)
        data = body.get("data") or {}
        return {
            "authorization_url": data.get("authorization_url", ""),
            "access_code": data.get("access_code", ""),
            "reference": data.get("reference", reference),
        }

    def verify(self, reference: str) -> VerifyResult:
        body = self._request("GET", f"/transaction/verify/{reference}", "verify payment")
        data = body.get("data") or {}
        transaction_id = data.get("id")
        return VerifyResult(
            reference=data.get("reference", reference),
            status=data.get("status", "failed"),
            amount=int(data.get("amount") or 0),
            gateway_response=data.get("gateway_response"),
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            paid_at=data.get("paid_at"),
        )

    def refund(self, transaction_id: str, amount, reason: Optional[str] = None) -> Dict[str, Any]:
        payload = {"transaction": transaction_id, "amount": to_minor_units(amount)}
        if reason:
            payload["merchant_note"] = reason
        body = self._request("POST", "/refund", "initiate refund", json=payload)
        return body.get("data") or {}

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 of the raw request body, hex encoded."""
        if not signature:
            return False
        expected = hmac.new(self.secret_key.encode(), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())


def get_gateway() -> PaystackClient:
    return PaystackClient.from_settings()
