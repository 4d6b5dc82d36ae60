from __future__ import annotations
import math
import os
from typing import Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import emails, pricing
from .assets import AssetStore, new_asset_store
from .checkout import (
    CheckoutFailed, CheckoutOrchestrator, CheckoutSettled, Customer,
)
from .config import Settings
from .errors import DomainError, ErrorCode, UnknownTicketType, ValidationError
from .fulfillment import FulfillmentPipeline
from .helpers import ct_equal, to_iso
from .infra.logging import configure_logging
from .infra.sql import make_async_engine
from .mailer import EmailMessage, Mailer, MailerError, new_mailer
from .model import affiliates, discounts, ledger
from .model.customers import find_ticket_type, get_or_create_ticket_type
from .model.db import Affiliate, Base, Discount, Order
from .model.webhookevents import new_store
from .paystack import PaymentAdapter, Paystack
from .tickets import deactivate_ticket

logger = structlog.get_logger(__name__)

HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.UNKNOWN_TICKET_TYPE: 400,
    ErrorCode.INVALID_DISCOUNT_CODE: 400,
    ErrorCode.GATEWAY_UNAVAILABLE: 503,
    ErrorCode.PAYMENT_INIT_FAILED: 502,
    ErrorCode.VERIFICATION_UNAVAILABLE: 503,
    ErrorCode.PAYMENT_DECLINED: 402,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.ALREADY_DEACTIVATED: 409,
    ErrorCode.NOT_PAID: 409,
    ErrorCode.NOT_CONFIRMED: 409,
    ErrorCode.DISCOUNT_NOT_FOUND: 404,
    ErrorCode.DUPLICATE_DISCOUNT_CODE: 409,
    ErrorCode.AFFILIATE_NOT_FOUND: 404,
    ErrorCode.REF_CODE_UNAVAILABLE: 503,
}

ADMIN_HOME = "/api/admin/orders"
AFFILIATE_HOME = "/api/affiliate/me"

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.SessionAsync() as session:
        yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> PaymentAdapter:
    return request.app.state.gateway


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_assets(request: Request) -> AssetStore:
    return request.app.state.assets


def get_pipeline(request: Request) -> FulfillmentPipeline:
    s = request.app.state
    return FulfillmentPipeline(settings=s.settings, mailer=s.mailer,
                               assets=s.assets)


async def get_orchestrator(
    request: Request,
    db: AsyncSession = Depends(get_db),
    pipeline: FulfillmentPipeline = Depends(get_pipeline),
) -> CheckoutOrchestrator:
    s = request.app.state
    return CheckoutOrchestrator(db, gateway=s.gateway, fulfillment=pipeline,
                                settings=s.settings)


async def webhook_events(request: Request,
                         db: AsyncSession = Depends(get_db)):
    s = request.app.state
    if s.settings.webhook_dedup_backend == "redis":
        return new_store("redis", r=s.redis)
    return new_store("sql", db=db)


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


# ----------------------------
# Serializers
# ----------------------------
def order_json(order: Order, *, admin: bool = False) -> dict:
    out = {
        "order_id": order.order_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "is_active": order.is_active,
        "items": [
            {
                "ticket_type": item.ticket_type.name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_price": item.total_price,
            }
            for item in order.items
        ],
        "subtotal": order.subtotal,
        "discount_code": order.discount_code,
        "discount_amount": order.discount_amount,
        "processing_fee": order.processing_fee,
        "total": order.total,
        "currency": order.currency,
        "event": {
            "name": order.event_name,
            "date": order.event_date,
            "time": order.event_time,
            "location": order.event_location,
        },
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
    }
    if admin:
        out["customer"] = {
            "full_name": order.user.full_name,
            "email": order.user.email,
            "phone_number": order.user.phone_number,
        }
        out["qr_code_url"] = order.qr_code_url
        out["affiliate_ref_code"] = (order.affiliate.ref_code
                                     if order.affiliate is not None else None)
    return out


def discount_json(d: Discount) -> dict:
    return {
        "id": d.id,
        "code": d.code,
        "percentage": d.percentage,
        "is_active": d.is_active,
        "usage_count": d.usage_count,
        "created_at": to_iso(d.created_at),
        "updated_at": to_iso(d.updated_at),
    }


def affiliate_json(a: Affiliate, settings: Settings) -> dict:
    return {
        "id": a.id,
        "ref_code": a.ref_code,
        "status": a.status,
        "full_name": a.user.full_name,
        "email": a.user.email,
        "phone_number": a.user.phone_number,
        "link": settings.referral_link(a.ref_code),
        "rules": [
            {
                "ticket_type": r.ticket_type.name,
                "commission_type": r.commission_type,
                "rate": r.rate,
                "amount": r.amount,
            }
            for r in a.rules
        ],
        "created_at": to_iso(a.created_at),
    }


def page_json(items, total: int, page: int, limit: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": max(1, math.ceil(total / limit)) if limit else 1,
    }


def settle_response(outcome) -> dict:
    if isinstance(outcome, CheckoutFailed):
        raise outcome.error
    if not isinstance(outcome, CheckoutSettled):
        raise TypeError(f"not a settlement outcome: {outcome!r}")
    body = {
        "ok": True,
        "newly_settled": outcome.newly_settled,
        "order": order_json(outcome.order),
    }
    if outcome.report is not None:
        # the customer never sees side-effect failures as payment failures
        body["fulfillment_ok"] = outcome.report.ok
    return body


# ----------------------------
# Checkout
# ----------------------------
@router.post("/api/checkout/quote")
async def checkout_quote(payload: dict, db: AsyncSession = Depends(get_db)):
    async with db.begin():
        q = await pricing.resolve(
            db,
            payload.get("ticket_type") or "",
            payload.get("quantity", 1),
            payload.get("discount_code"),
        )
    return q.as_dict()


@router.post("/api/checkout")
async def create_checkout(
    payload: dict,
    orch: CheckoutOrchestrator = Depends(get_orchestrator),
):
    customer = Customer(
        full_name=payload.get("full_name") or "",
        email=payload.get("email") or "",
        phone_number=payload.get("phone_number") or "",
    )
    outcome = await orch.initiate_checkout(
        customer,
        payload.get("ticket_type") or "",
        payload.get("quantity", 1),
        discount_code=payload.get("discount_code"),
        affiliate_ref=payload.get("ref"),
    )
    if isinstance(outcome, CheckoutFailed):
        raise outcome.error
    return {
        "order_id": outcome.order_id,
        "reference": outcome.reference,
        "payment_url": outcome.payment_url,
        "access_code": outcome.access_code,
        **outcome.quote.as_dict(),
    }


# Paystack redirects the browser here with ?reference=<order_id>&trxref=...
@router.get("/tickets/payment-success")
async def payment_return(
    reference: Optional[str] = None,
    trxref: Optional[str] = None,
    orch: CheckoutOrchestrator = Depends(get_orchestrator),
):
    ref = reference or trxref
    if not ref:
        raise ValidationError("missing payment reference")
    return settle_response(await orch.complete_checkout(ref))


@router.post("/api/payments/verify/{reference}")
async def verify_payment(
    reference: str,
    orch: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return settle_response(await orch.complete_checkout(reference))


# ----------------------------
# Webhook endpoint
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    gateway: PaymentAdapter = Depends(get_gateway),
    orch: CheckoutOrchestrator = Depends(get_orchestrator),
    events=Depends(webhook_events),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = gateway.verify_webhook(payload, headers)
    kind = gateway.event_kind(event)  # succeeded | failed | other
    reference, idem = gateway.event_ids(event)
    if kind == "other":
        return {"ok": True, "ignored": event.get("event")}
    if not reference:
        raise HTTPException(400, detail="missing reference")

    if not await events.mark_event_seen(idem):
        return {"ok": True, "idempotent": True}

    # the event body is only a hint: settlement re-verifies with the gateway
    outcome = await orch.complete_checkout(reference)
    if isinstance(outcome, CheckoutFailed):
        if outcome.error.code == ErrorCode.VERIFICATION_UNAVAILABLE:
            # let the gateway redeliver
            if idem:
                await events.forget(idem)
            raise HTTPException(503, detail="verification unavailable")
        logger.info("webhook.not_settled", reference=reference,
                    code=outcome.error.code.value)
        return {"ok": True, "error": outcome.error.code.value}
    return {
        "ok": True,
        "order_status": outcome.order.payment_status,
        "newly_settled": outcome.newly_settled,
    }


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@router.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    async with db.begin():
        order = await ledger.require_order(db, order_id)
        return order_json(order)


# ----------------------------
# Admin login
# ----------------------------
def safe_next(next: Optional[str]) -> str:
    # only same-site paths
    if not next or not next.startswith("/") or next.startswith("//"):
        return ADMIN_HOME
    return next


def login_page(request: Request, next: str, settings: Settings,
               error: Optional[str] = None, status_code: int = 200,
               affiliate: bool = False):
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "title": settings.event_name,
            "heading": "Affiliate" if affiliate else "Admin",
            "action": "/affiliate/login" if affiliate else "/admin/login",
            "user_field": "email" if affiliate else "username",
            "next": next,
            "error": error,
        },
        status_code=status_code,
    )


@router.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(
    request: Request,
    next: Optional[str] = ADMIN_HOME,
    settings: Settings = Depends(get_settings),
):
    return login_page(request, safe_next(next), settings)


@router.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form(ADMIN_HOME),
    settings: Settings = Depends(get_settings),
):
    ok_user = ct_equal(username.strip(), settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        logger.info("admin.login", user=username.strip())
        return RedirectResponse(url=safe_next(next),
                                status_code=HTTP_303_SEE_OTHER)
    # auth failed
    logger.warning("admin.login_failed", user=username.strip())
    return login_page(request, safe_next(next), settings,
                      error="Invalid credentials.", status_code=401)


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


# QR code target: staff scan a ticket and land here
@router.get("/admin-page/{order_id}")
async def admin_ticket_page(request: Request, order_id: str,
                            db: AsyncSession = Depends(get_db)):
    if not is_admin(request):
        dest = request.url.path
        return RedirectResponse(url=f"/admin/login?next={dest}",
                                status_code=307)
    async with db.begin():
        order = await ledger.require_order(db, order_id)
        return order_json(order, admin=True)


# ----------------------------
# Admin: orders
# ----------------------------
@router.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def api_admin_orders(
    search: Optional[str] = None,
    payment_status: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = 1,
    limit: int = 15,
    db: AsyncSession = Depends(get_db),
):
    page, limit = max(1, page), max(1, min(limit, 100))
    async with db.begin():
        total, orders = await ledger.list_orders(
            db, search=search,
            payment_status=(payment_status or "").upper() or None,
            active=active, page=page, limit=limit,
        )
        items = [order_json(o, admin=True) for o in orders]
    return page_json(items, total, page, limit)


@router.get("/api/admin/orders/{order_id}",
            dependencies=[Depends(require_admin)])
async def api_admin_order(order_id: str, db: AsyncSession = Depends(get_db)):
    async with db.begin():
        order = await ledger.require_order(db, order_id)
        return order_json(order, admin=True)


@router.post("/api/admin/orders/{order_id}/deactivate",
             dependencies=[Depends(require_admin)])
async def api_admin_deactivate(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    assets: AssetStore = Depends(get_assets),
):
    order = await deactivate_ticket(db, assets, order_id)
    return {"ok": True, "order": order_json(order, admin=True)}


@router.post("/api/admin/orders/{order_id}/resend-confirmation",
             dependencies=[Depends(require_admin)])
async def api_admin_resend_confirmation(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    pipeline: FulfillmentPipeline = Depends(get_pipeline),
):
    async with db.begin():
        order = await ledger.require_order(db, order_id)
    report = await pipeline.resend_confirmation(db, order)
    return {
        "ok": report.ok,
        "emails_sent": report.emails_sent,
        "failed_steps": report.failed_steps,
    }


# ----------------------------
# Admin: discounts
# ----------------------------
@router.get("/api/admin/discounts", dependencies=[Depends(require_admin)])
async def api_admin_discounts(db: AsyncSession = Depends(get_db)):
    async with db.begin():
        items = await discounts.list_discounts(db)
        return {"items": [discount_json(d) for d in items]}


@router.post("/api/admin/discounts", dependencies=[Depends(require_admin)])
async def api_admin_create_discount(payload: dict,
                                    db: AsyncSession = Depends(get_db)):
    async with db.begin():
        d = await discounts.create_discount(
            db,
            percentage=payload.get("percentage"),
            code=payload.get("code"),
            is_active=payload.get("is_active", True),
        )
    logger.info("admin.discount_created", code=d.code)
    return discount_json(d)


@router.put("/api/admin/discounts/{discount_id}",
            dependencies=[Depends(require_admin)])
async def api_admin_update_discount(discount_id: str, payload: dict,
                                    db: AsyncSession = Depends(get_db)):
    async with db.begin():
        d = await discounts.update_discount(
            db, discount_id,
            code=payload.get("code") or "",
            percentage=payload.get("percentage"),
            is_active=payload.get("is_active", True),
        )
    return discount_json(d)


@router.post("/api/admin/discounts/{discount_id}/toggle",
             dependencies=[Depends(require_admin)])
async def api_admin_toggle_discount(discount_id: str, payload: dict,
                                    db: AsyncSession = Depends(get_db)):
    async with db.begin():
        d = await discounts.set_discount_active(
            db, discount_id, bool(payload.get("is_active"))
        )
    return discount_json(d)


@router.delete("/api/admin/discounts/{discount_id}",
               dependencies=[Depends(require_admin)])
async def api_admin_delete_discount(discount_id: str,
                                    db: AsyncSession = Depends(get_db)):
    async with db.begin():
        await discounts.delete_discount(db, discount_id)
    logger.info("admin.discount_deleted", discount_id=discount_id)
    return {"ok": True}


# ----------------------------
# Admin: affiliates
# ----------------------------
async def send_affiliate_welcome(mailer: Mailer, settings: Settings,
                                 affiliate: Affiliate,
                                 password: Optional[str] = None) -> bool:
    html = emails.render_affiliate_welcome(emails.AffiliateWelcomeProps(
        app_url=settings.app_url,
        full_name=affiliate.user.full_name,
        email=affiliate.user.email,
        ref_code=affiliate.ref_code,
        link=settings.referral_link(affiliate.ref_code),
        temporary_password=password,
    ))
    try:
        await mailer.send(EmailMessage(to=[affiliate.user.email],
                                       subject=emails.SUBJECT_AFFILIATE_WELCOME,
                                       html=html))
    except MailerError as e:
        logger.error("admin.affiliate_welcome_failed",
                     affiliate_id=affiliate.id, error=repr(e))
        return False
    return True


@router.post("/api/admin/affiliates", dependencies=[Depends(require_admin)])
async def api_admin_create_affiliate(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
):
    email = (payload.get("email") or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("Please enter a valid email address")
    password = payload.get("password") or None
    async with db.begin():
        affiliate, created = await affiliates.create_affiliate(
            db, email=email,
            full_name=(payload.get("full_name") or "").strip() or None,
            phone_number=(payload.get("phone_number") or "").strip() or None,
            password=password,
        )
    if created:
        logger.info("admin.affiliate_created", affiliate_id=affiliate.id,
                    ref_code=affiliate.ref_code)
    email_sent = False
    # a new portal password has to reach the affiliate
    if created or password:
        email_sent = await send_affiliate_welcome(mailer, settings, affiliate,
                                                  password)
    return {
        "created": created,
        "email_sent": email_sent,
        "affiliate": affiliate_json(affiliate, settings),
    }


@router.get("/api/admin/affiliates", dependencies=[Depends(require_admin)])
async def api_admin_affiliates(
    page: int = 1,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    page, limit = max(1, page), max(1, min(limit, 100))
    async with db.begin():
        total, rows = await affiliates.list_affiliates(db, page=page,
                                                       limit=limit)
        items = []
        for a in rows:
            item = affiliate_json(a, settings)
            item["stats"] = await affiliates.affiliate_stats(db, a.id)
            items.append(item)
    return page_json(items, total, page, limit)


@router.get("/api/admin/affiliates/{affiliate_id}",
            dependencies=[Depends(require_admin)])
async def api_admin_affiliate(
    affiliate_id: str,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    async with db.begin():
        a = await affiliates.get_affiliate(db, affiliate_id)
        out = affiliate_json(a, settings)
        out["stats"] = await affiliates.affiliate_stats(db, a.id)
    return out


@router.put("/api/admin/affiliates/{affiliate_id}/rules",
            dependencies=[Depends(require_admin)])
async def api_admin_set_rule(
    affiliate_id: str,
    payload: dict,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    name = payload.get("ticket_type") or ""
    async with db.begin():
        a = await affiliates.get_affiliate(db, affiliate_id)
        tt = await find_ticket_type(db, name)
        if tt is None:
            # rules may be set before the first sale of a known type
            tt = await get_or_create_ticket_type(
                db, name, pricing.base_price(name), settings.event_name
            )
        await affiliates.set_commission_rule(
            db, a, tt,
            commission_type=(payload.get("commission_type") or "").upper(),
            rate=payload.get("rate"),
            amount=payload.get("amount"),
        )
        a = await affiliates.get_affiliate(db, affiliate_id)
    return affiliate_json(a, settings)


# ----------------------------
# Affiliate portal
# ----------------------------
def require_affiliate(request: Request) -> str:
    affiliate_id = request.session.get("affiliate_id")
    if not affiliate_id:
        raise HTTPException(status_code=401,
                            detail="affiliate login required")
    return affiliate_id


@router.get("/affiliate/login", response_class=HTMLResponse)
async def affiliate_login_get(
    request: Request,
    settings: Settings = Depends(get_settings),
):
    return login_page(request, AFFILIATE_HOME, settings, affiliate=True)


@router.post("/affiliate/login", response_class=HTMLResponse)
async def affiliate_login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    email = email.strip().lower()
    async with db.begin():
        affiliate = await affiliates.authenticate_affiliate(db, email,
                                                            password)
    if affiliate is None:
        logger.warning("affiliate.login_failed", email=email)
        return login_page(request, AFFILIATE_HOME, settings,
                          error="Invalid credentials.", status_code=401,
                          affiliate=True)
    request.session["affiliate_id"] = affiliate.id
    logger.info("affiliate.login", affiliate_id=affiliate.id)
    return RedirectResponse(url=AFFILIATE_HOME,
                            status_code=HTTP_303_SEE_OTHER)


@router.get("/affiliate/logout")
async def affiliate_logout(request: Request):
    request.session.pop("affiliate_id", None)
    return RedirectResponse(url="/affiliate/login",
                            status_code=HTTP_303_SEE_OTHER)


@router.get(AFFILIATE_HOME)
async def affiliate_me(
    affiliate_id: str = Depends(require_affiliate),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    async with db.begin():
        a = await affiliates.get_affiliate(db, affiliate_id)
        out = affiliate_json(a, settings)
        out["stats"] = await affiliates.affiliate_stats(db, a.id)
    return out


# ---
# app factory, startup / shutdown
# ---
async def domain_error_handler(request: Request, exc: DomainError):
    status = HTTP_STATUS.get(exc.code, 400)
    if isinstance(exc, UnknownTicketType):
        logger.info("http.unknown_ticket_type", name=exc.name)
    return ORJSONResponse({"error": exc.code.value, "message": exc.message},
                          status_code=status)


async def startup(app: FastAPI) -> None:
    s: Settings = app.state.settings
    async with app.state.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if app.state.http is None:
        app.state.http = httpx.AsyncClient(
            timeout=10.0,
            limits=httpx.Limits(max_connections=100,
                                max_keepalive_connections=20),
        )
    if s.webhook_dedup_backend == "redis" and app.state.redis is None:
        app.state.redis = redis.from_url(
            s.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    if app.state.gateway is None:
        app.state.gateway = Paystack(
            http=app.state.http,
            secret_key=s.paystack_secret_key,
            base_url=s.paystack_base_url,
            currency=s.currency,
        )
    if app.state.mailer is None:
        app.state.mailer = new_mailer(s, app.state.http)
    if app.state.assets is None:
        app.state.assets = new_asset_store(s, app.state.http)

    logger.info(
        "server.started",
        app_url=s.app_url,
        mailer=type(app.state.mailer).__name__,
        assets=type(app.state.assets).__name__,
        webhook_dedup=s.webhook_dedup_backend,
    )


async def shutdown(app: FastAPI) -> None:
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None
    await app.state.engine.dispose()


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[PaymentAdapter] = None,
    mailer: Optional[Mailer] = None,
    assets: Optional[AssetStore] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, json=settings.log_json)

    app = FastAPI(
        title="shutupnraveee tickets",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.add_exception_handler(DomainError, domain_error_handler)
    app.include_router(router)

    engine, SessionAsync = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.http = None
    app.state.redis = None
    app.state.gateway = gateway
    app.state.mailer = mailer
    app.state.assets = assets

    @app.on_event("startup")
    async def _startup():
        await startup(app)

    @app.on_event("shutdown")
    async def _shutdown():
        await shutdown(app)

    return app
