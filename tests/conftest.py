"""Shared fixtures: a file-backed SQLite database per test and in-memory
stand-ins for the payment gateway, the mailer and the image host."""

from typing import Dict, List, Optional, Union

import pytest

from shutupnrave.assets import AssetHostError, AssetStore
from shutupnrave.checkout import CheckoutOrchestrator, Customer
from shutupnrave.config import Settings
from shutupnrave.fulfillment import FulfillmentPipeline
from shutupnrave.infra.sql import make_async_engine
from shutupnrave.mailer import EmailMessage, Mailer, MailerError
from shutupnrave.model import ledger
from shutupnrave.model.db import Base
from shutupnrave.paystack import (
    GatewayError, PaymentSession, Paystack, Verification,
)

SECRET = "sk_test_secret"


class FakeGateway(Paystack):
    """Paystack with the HTTP calls replaced; webhook parsing is the real one."""

    def __init__(self, secret_key: str = SECRET) -> None:
        super().__init__(http=None, secret_key=secret_key)
        self.initialized: List[dict] = []
        self.verify_calls: List[str] = []
        # reference -> raw gateway status, or a GatewayError
        self.outcomes: Dict[str, Union[str, GatewayError]] = {}
        self.init_error: Optional[GatewayError] = None
        self.amounts: Dict[str, int] = {}

    async def initialize(self, *, order_id, amount, email, metadata,
                         callback_url):
        self.initialized.append({
            "order_id": order_id, "amount": amount, "email": email,
            "metadata": metadata, "callback_url": callback_url,
        })
        if self.init_error is not None:
            return self.init_error
        self.amounts[order_id] = amount
        return PaymentSession(
            reference=order_id,
            payment_url=f"https://checkout.paystack.test/{order_id}",
            access_code=f"ac_{order_id}",
        )

    async def verify(self, reference):
        self.verify_calls.append(reference)
        outcome = self.outcomes.get(reference, "success")
        if isinstance(outcome, GatewayError):
            return outcome
        return Verification(
            reference=reference,
            succeeded=(outcome == "success"),
            raw_status=outcome,
            amount=self.amounts.get(reference),
            currency="NGN",
        )


class FakeMailer(Mailer):
    def __init__(self) -> None:
        self.sent: List[EmailMessage] = []
        self.fail_recipients: set = set()

    async def send(self, message: EmailMessage) -> Optional[str]:
        if self.fail_recipients.intersection(message.to):
            raise MailerError(f"rejected {message.to}")
        self.sent.append(message)
        return f"email-{len(self.sent)}"

    def to(self, address: str) -> List[EmailMessage]:
        return [m for m in self.sent if address in m.to]


class FakeAssets(AssetStore):
    def __init__(self) -> None:
        self.uploads: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_upload = False
        self.fail_delete = False

    async def upload(self, png: bytes, public_id: str) -> str:
        if self.fail_upload:
            raise AssetHostError("host down")
        self.uploads[public_id] = png
        return f"https://cdn.test/qr/{public_id}.png"

    async def delete(self, url: str) -> None:
        if self.fail_delete:
            raise AssetHostError("host down")
        self.deleted.append(url)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        app_url="https://tickets.test",
        paystack_secret_key=SECRET,
        admin_notify_emails=("ops@shutupnrave.test",),
        admin_username="admin",
        admin_password="letmein",
        session_secret="test-session-secret",
    )


@pytest.fixture
async def engine(settings):
    engine, SessionAsync = make_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine, SessionAsync
    await engine.dispose()


@pytest.fixture
async def db(engine):
    _, SessionAsync = engine
    async with SessionAsync() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def assets() -> FakeAssets:
    return FakeAssets()


@pytest.fixture
def pipeline(settings, mailer, assets) -> FulfillmentPipeline:
    return FulfillmentPipeline(settings=settings, mailer=mailer,
                               assets=assets)


@pytest.fixture
def orchestrator(db, gateway, pipeline, settings) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(db, gateway=gateway, fulfillment=pipeline,
                                settings=settings)


@pytest.fixture
def customer() -> Customer:
    return Customer(full_name="Ada Lovelace", email="ada@example.com",
                    phone_number="08012345678")


@pytest.fixture
def place_order(orchestrator, customer):
    """Start a checkout and return its order id."""

    async def _place(ticket_type="Solo Vibes", quantity=1, **kw) -> str:
        outcome = await orchestrator.initiate_checkout(
            kw.pop("customer", customer), ticket_type, quantity, **kw
        )
        return outcome.order_id

    return _place


@pytest.fixture
def paid_order(db, place_order):
    """Place an order and flip it to PAID without running fulfillment."""

    async def _paid(**kw):
        order_id = await place_order(**kw)
        async with db.begin():
            t = await ledger.mark_paid(db, order_id)
        return t.order

    return _paid
