import asyncio
import logging
import time

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sqlalchemy import text

from transit_shared import RateLimitMiddleware, RateLimitRule, build_limiter

from .config import settings
from .database import engine, session_scope
from .entitlements import get_entitlement_store
from .errors import AppError, app_error_handler, http_exception_handler
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .routers import admin as admin_router
from .routers import checkout as checkout_router
from .routers import fares as fares_router
from .routers import network as network_router
from .routers import passes as passes_router
from .routers import payments as payments_router
from .routers import rides as rides_router
from .routers import tickets as tickets_router
from .routers import trips as trips_router
from .routers import wallet as wallet_router
from .routers import webhooks as webhooks_router


logger = logging.getLogger("transit.app")

REQUESTS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


def _rate_limit_rules() -> list[RateLimitRule]:
    backend = settings.RATE_LIMIT_BACKEND
    payments = build_limiter(
        backend,
        settings.RATE_LIMIT_PAYMENTS_CAPACITY,
        settings.RATE_LIMIT_PAYMENTS_PERIOD_SECS,
        redis_url=settings.REDIS_URL,
        prefix=settings.RATE_LIMIT_REDIS_PREFIX,
    )
    api = build_limiter(
        backend,
        settings.RATE_LIMIT_API_CAPACITY,
        settings.RATE_LIMIT_API_PERIOD_SECS,
        redis_url=settings.REDIS_URL,
        prefix=settings.RATE_LIMIT_REDIS_PREFIX,
    )
    # First matching prefix wins; checkout and payment reads share one bucket
    return [
        RateLimitRule("payments", "/checkout", payments),
        RateLimitRule("payments", "/payments", payments),
        RateLimitRule("api", "/", api),
    ]


def sweep_expired_once() -> int:
    with session_scope() as db:
        return get_entitlement_store().sweep_expired_tickets(db)


def create_app() -> FastAPI:
    app = FastAPI(title="Transit API", version="0.1.0")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON request log
    app.add_middleware(RequestIDMiddleware)

    # Rate limiting; the limiters live as long as this app instance
    app.state.rate_limit_rules = []
    if settings.RATE_LIMIT_ENABLED:
        rules = _rate_limit_rules()
        app.state.rate_limit_rules = rules
        app.add_middleware(
            RateLimitMiddleware,
            rules=rules,
            exempt_paths=("/health", "/metrics", "/webhooks/checkout"),
        )

    @app.on_event("shutdown")
    def _close_limiters():
        seen = set()
        for rule in app.state.rate_limit_rules:
            if id(rule.limiter) not in seen:
                seen.add(id(rule.limiter))
                rule.limiter.close()

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.execute(text("select 1"))
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        # Templated route path keeps label cardinality bounded
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQUESTS.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(checkout_router.router)
    app.include_router(payments_router.router)
    app.include_router(webhooks_router.router)
    app.include_router(wallet_router.router)
    app.include_router(rides_router.router)
    app.include_router(trips_router.router)
    app.include_router(tickets_router.router)
    app.include_router(passes_router.router)
    app.include_router(fares_router.router)
    app.include_router(network_router.router)
    app.include_router(admin_router.router)

    # Error handlers
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)

    # Optional background sweep that materializes ticket expiry
    poll = settings.EXPIRY_SWEEP_POLL_SECS
    if poll > 0:
        @app.on_event("startup")
        async def _start_expiry_sweeper():
            async def _loop():
                while True:
                    try:
                        await asyncio.to_thread(sweep_expired_once)
                    except Exception:
                        logger.exception("ticket expiry sweep failed")
                    await asyncio.sleep(poll)
            asyncio.create_task(_loop())

    return app


app = create_app()


def main() -> None:
    import uvicorn
    uvicorn.run("transit_api.main:app", host=settings.APP_HOST, port=settings.APP_PORT, reload=settings.APP_RELOAD)


if __name__ == "__main__":
    main()
