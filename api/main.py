"""FastAPI app entrypoint."""

import logging
import os
import time
import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from api.logging_config import setup_logging
from api.routers import admin, checkout, coupons, payments, webhooks
from billing.errors import (
    BillingError,
    CheckoutError,
    ConfigurationError,
    CouponRejected,
    WebhookVerificationError,
)
from billing.payments import FULFILLMENT_FAILED
from database import async_session, engine, init_db
from database.models import Payment, User

logger = logging.getLogger("vitrine.api")

API_VERSION = "0.3.0"


async def _ensure_admin_account():
    """Seed the operator account used for replay and request completion."""
    admin_email = os.getenv("ADMIN_EMAIL", "admin@vitrine.local")
    async with async_session() as session:
        exists = await session.scalar(select(User.id).where(User.email == admin_email))
        if exists is None:
            session.add(User(email=admin_email, name="Administrator", role="admin", is_active=True))
            await session.commit()
            logger.info("Admin account created: %s", admin_email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Vitrine API %s starting up", API_VERSION)
    await init_db()
    await _ensure_admin_account()
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Vitrine API stopped, engine disposed")


app = FastAPI(
    title="Vitrine API",
    description="Classificados: pagamentos, planos, destaques e anúncios de rodapé",
    version=API_VERSION,
    lifespan=lifespan,
    redirect_slashes=False,
)

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if o.strip()
]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limiter per client IP and route bucket.

    Webhook deliveries are exempt: Stripe retries on 429 and a throttled
    confirmation only delays reconciliation.
    """

    WINDOW_SECONDS = 60
    # first matching prefix wins
    BUCKETS = (
        ("/api/coupons", "coupons", 20),
        ("/api/checkout", "checkout", 30),
        ("/api/admin", "admin", 30),
        ("/api/", "api", 120),
    )
    EXEMPT = ("/api/webhooks",)

    def __init__(self, app):
        super().__init__(app)
        self.hits: dict[str, deque] = defaultdict(deque)

    def _bucket(self, path: str):
        if path.startswith(self.EXEMPT):
            return None
        for prefix, name, limit in self.BUCKETS:
            if path.startswith(prefix):
                return name, limit
        return None

    async def dispatch(self, request: Request, call_next):
        bucket = self._bucket(request.url.path)
        if bucket is None:
            return await call_next(request)

        name, limit = bucket
        client_ip = request.client.host if request.client else "unknown"
        hits = self.hits[f"{client_ip}:{name}"]
        now = time.monotonic()
        while hits and now - hits[0] >= self.WINDOW_SECONDS:
            hits.popleft()
        if len(hits) >= limit:
            retry_after = int(self.WINDOW_SECONDS - (now - hits[0])) + 1
            logger.warning("Rate limited %s on bucket %s", client_ip, name)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later."},
                headers={"Retry-After": str(retry_after)},
            )
        hits.append(now)
        return await call_next(request)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Request id, security headers and one access log line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        logger.info(
            "[%s] %s %s -> %d (%.2fs)",
            request_id, request.method, request.url.path,
            response.status_code, time.perf_counter() - start,
        )
        return response


app.add_middleware(RequestContextMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    if isinstance(exc, CouponRejected):
        return JSONResponse(
            status_code=400,
            content={"detail": "Coupon rejected", "reason": exc.reason, "code": exc.code},
        )
    if isinstance(exc, (CheckoutError, WebhookVerificationError)):
        return JSONResponse(status_code=400, content={"detail": str(exc)})
    if isinstance(exc, ConfigurationError):
        logger.error("Configuration error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Payment service not configured"})
    logger.error(
        "Billing error on %s %s: %s (type=%s)",
        request.method, request.url.path, exc, type(exc).__name__,
    )
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "-")
    logger.exception(
        "[%s] Unhandled %s on %s %s", request_id, type(exc).__name__, request.method, request.url.path,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "request_id": request_id},
    )


app.include_router(checkout.router)
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(coupons.router)
app.include_router(admin.router)


@app.get("/", include_in_schema=False)
async def root():
    return RedirectResponse(url="/docs")


@app.get("/health")
async def health():
    """DB connectivity plus the count of payments waiting for a fulfillment replay."""
    body = {"status": "ok", "service": "vitrine-api", "version": API_VERSION}
    try:
        async with async_session() as session:
            failed = await session.scalar(
                select(func.count())
                .select_from(Payment)
                .where(Payment.fulfillment_status == FULFILLMENT_FAILED)
            )
    except SQLAlchemyError as e:
        logger.error("Health check could not reach the database: %s", e)
        body.update(status="degraded", database="unreachable")
        return body

    body["database"] = "connected"
    body["failed_fulfillments"] = failed or 0
    if failed:
        body["status"] = "attention"
    return body
