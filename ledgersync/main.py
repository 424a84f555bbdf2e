import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ledgersync.core.config import settings
from ledgersync.core.database import engine
from ledgersync.core.rate_limit import limiter
from ledgersync.routers import health, plaid

logging.basicConfig(
    level=getattr(logging, settings.api_log_level.upper()),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
log = logging.getLogger("ledgersync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info(
        "Starting LedgerSync API (env=%s, plaid=%s, page_size=%d, claim_ttl=%ds)",
        settings.environment,
        settings.plaid_env if settings.plaid_configured else "not configured",
        settings.plaid_page_size,
        settings.sync_claim_ttl_seconds,
    )
    yield
    await engine.dispose()
    log.info("LedgerSync API shut down.")


# ─── Security headers middleware ───────────────────────────────────────────────
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Connection listings carry institution names and error details
        response.headers["Cache-Control"] = "no-store"
        if settings.environment != "development":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


app = FastAPI(
    title="LedgerSync API",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# ─── CORS ──────────────────────────────────────
# Only the Link flow and the connections screen call this API from a browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=(
        ["http://localhost:3000", f"http://{settings.domain}"]
        if settings.environment == "development"
        else [f"https://{settings.domain}"]
    ),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# ─── Routers ──────────────────────────────────
app.include_router(health.router)
app.include_router(plaid.router, prefix="/api/v1")
