"""
Payment Gateway Adapter (Paystack).

Wraps the three things the order ledger needs from the provider: starting a
transaction, asking how a transaction ended, and checking that a webhook
really came from Paystack.
"""
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import structlog

from config import FRONTEND_URL, PAYSTACK_BASE_URL, PAYSTACK_SECRET_KEY, PAYSTACK_TIMEOUT, PAYSTACK_WEBHOOK_SECRET
from errors import UpstreamError

log = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"
FAILED_STATUSES = frozenset({"failed", "reversed"})


@dataclass
class InitializedTransaction:
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


@dataclass
class VerifiedTransaction:
    reference: str
    status: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def failed(self) -> bool:
        # "abandoned" and "ongoing" transactions can still be paid
        return self.status in FAILED_STATUSES


def to_subunit(amount: float) -> int:
    """Paystack amounts are in the currency's subunit (kobo, pesewas)."""
    return int(round(amount * 100))


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str = PAYSTACK_WEBHOOK_SECRET) -> bool:
    if not signature or not secret:
        return False
    # Header values arrive latin-1 decoded; compare_digest refuses non-ASCII str
    expected = compute_signature(raw_body, secret).encode()
    return hmac.compare_digest(expected, signature.encode("latin-1", "replace"))


class PaystackGateway:
    def __init__(
        self,
        secret_key: str = PAYSTACK_SECRET_KEY,
        base_url: str = PAYSTACK_BASE_URL,
        callback_url: str = f"{FRONTEND_URL}/payment/verify",
        timeout: float = PAYSTACK_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"},
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            log.error("paystack.unreachable", path=path, error=str(e))
            raise UpstreamError("Payment provider unreachable", {"message": str(e)})
        try:
            payload = response.json()
        except ValueError:
            payload = {"message": response.text}
        if response.is_error or not payload.get("status"):
            log.warning("paystack.error", path=path, status_code=response.status_code, body=payload)
            raise UpstreamError(payload.get("message") or "Payment provider error", payload)
        return payload

    async def initialize(self, email: str, amount: float, metadata: Optional[dict] = None) -> InitializedTransaction:
        payload = await self._call(
            "POST",
            "/transaction/initialize",
            json={
                "email": email,
                "amount": to_subunit(amount),
                "callback_url": self.callback_url,
                "metadata": metadata or {},
            },
        )
        data = payload.get("data") or {}
        if not data.get("reference") or not data.get("authorization_url"):
            raise UpstreamError("Payment provider returned an incomplete transaction", payload)
        return InitializedTransaction(
            reference=data["reference"],
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
        )

    async def verify(self, reference: str) -> VerifiedTransaction:
        payload = await self._call("GET", f"/transaction/verify/{reference}")
        data = payload.get("data") or {}
        return VerifiedTransaction(reference=reference, status=data.get("status", "unknown"), data=data)


_gateway: Optional[PaystackGateway] = None


def get_gateway() -> PaystackGateway:
    global _gateway
    if _gateway is None:
        _gateway = PaystackGateway()
    return _gateway
