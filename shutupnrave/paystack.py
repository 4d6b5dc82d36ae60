from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union
from fastapi import HTTPException
import hashlib
import hmac
import json

import httpx
import structlog

logger = structlog.get_logger(__name__)

# gateway statuses that mean "not decided yet", not "declined"
IN_FLIGHT_STATUSES = frozenset({"ongoing", "pending", "processing", "queued"})


# ----------------------------
# Tagged results
# ----------------------------
@dataclass(frozen=True)
class PaymentSession:
    reference: str
    payment_url: str
    access_code: Optional[str] = None


@dataclass(frozen=True)
class Verification:
    reference: str
    succeeded: bool
    raw_status: str
    amount: Optional[int] = None
    currency: Optional[str] = None

    @property
    def in_flight(self) -> bool:
        return not self.succeeded and self.raw_status in IN_FLIGHT_STATUSES


@dataclass(frozen=True)
class GatewayError:
    kind: str  # "unavailable"
    detail: str = ""
    status_code: Optional[int] = None


InitializeResult = Union[PaymentSession, GatewayError]
VerifyResult = Union[Verification, GatewayError]


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    async def initialize(
        self, *, order_id: str, amount: int, email: str,
        metadata: Dict[str, Any], callback_url: str,
    ) -> InitializeResult: ...

    @abstractmethod
    async def verify(self, reference: str) -> VerifyResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "other"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment reference, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# Paystack implementation
# ----------------------------
@dataclass
class Paystack(PaymentAdapter):
    http: httpx.AsyncClient
    secret_key: str
    base_url: str = "https://api.paystack.co"
    currency: str = "NGN"
    _headers: Dict[str, str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}{path}"

    async def initialize(
        self, *, order_id: str, amount: int, email: str,
        metadata: Dict[str, Any], callback_url: str,
    ) -> InitializeResult:
        # our order id doubles as the gateway reference, so verification
        # can always find the order again
        body = {
            "reference": order_id,
            "email": email,
            "amount": int(amount),  # kobo
            "currency": self.currency,
            "metadata": metadata,
            "callback_url": callback_url,
        }
        try:
            r = await self.http.post(
                self._url("/transaction/initialize"),
                json=body, headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.warning("paystack.initialize.transport_error",
                           reference=order_id, error=repr(e))
            return GatewayError(kind="unavailable", detail=repr(e))

        if not r.is_success:
            logger.warning("paystack.initialize.http_error",
                           reference=order_id, status_code=r.status_code)
            return GatewayError(kind="unavailable",
                                detail=r.text[:200],
                                status_code=r.status_code)
        try:
            data = r.json()["data"]
            return PaymentSession(
                reference=data.get("reference") or order_id,
                payment_url=data["authorization_url"],
                access_code=data.get("access_code"),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("paystack.initialize.bad_response",
                           reference=order_id, error=repr(e))
            return GatewayError(kind="unavailable", detail="bad response",
                                status_code=r.status_code)

    async def verify(self, reference: str) -> VerifyResult:
        try:
            r = await self.http.get(
                self._url(f"/transaction/verify/{reference}"),
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.warning("paystack.verify.transport_error",
                           reference=reference, error=repr(e))
            return GatewayError(kind="unavailable", detail=repr(e))

        if not r.is_success:
            logger.warning("paystack.verify.http_error",
                           reference=reference, status_code=r.status_code)
            return GatewayError(kind="unavailable", detail=r.text[:200],
                                status_code=r.status_code)
        try:
            data = r.json()["data"]
            status = str(data.get("status") or "").lower()
            amount = data.get("amount")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("paystack.verify.bad_response",
                           reference=reference, error=repr(e))
            return GatewayError(kind="unavailable", detail="bad response",
                                status_code=r.status_code)
        return Verification(
            reference=data.get("reference") or reference,
            succeeded=(status == "success"),
            raw_status=status,
            amount=int(amount) if amount is not None else None,
            currency=data.get("currency"),
        )

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-paystack-signature")
        expected = hmac.new(
            self.secret_key.encode(), payload, hashlib.sha512
        ).hexdigest()
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_kind(self, event: dict) -> str:
        name = event.get("event", "")
        if name == "charge.success":
            return "succeeded"
        if name == "charge.failed":
            return "failed"
        return "other"

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        data = event.get("data") or {}
        evt_id = data.get("id")
        return (
            data.get("reference", "") or "",
            f"{event.get('event', '')}:{evt_id}" if evt_id else None,
        )
