"""ErrandHub: dispatch and negotiation core for an on-demand errand marketplace."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from errandhub.adapters.chat import HttpChatGateway, LoggingChatTransport
from errandhub.adapters.geocoding import (
    CachingGeocoder,
    HaversineDistance,
    NominatimGeocoder,
    OfflineGeocoder,
)
from errandhub.adapters.identity import FormatOnlyVerifier, HttpIdentityVerifier
from errandhub.api.router import api_router
from errandhub.background import background_loop
from errandhub.config import settings
from errandhub.database import close_db, get_session_factory, init_db, resolve_url
from errandhub.dispatch import DispatchEngine
from errandhub.errors import DispatchError
from errandhub.rate_limit import limiter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("errandhub")


def build_adapters() -> dict:
    """Real providers where configured, local fallbacks otherwise."""
    if settings.geocoder_url:
        inner = NominatimGeocoder(settings.geocoder_url, settings.geocoder_user_agent)
    else:
        inner = OfflineGeocoder()
    if settings.identity_verifier_url:
        identity = HttpIdentityVerifier(
            settings.identity_verifier_url, settings.identity_verifier_key
        )
    else:
        identity = FormatOnlyVerifier()
    if settings.chat_gateway_url:
        transport = HttpChatGateway(settings.chat_gateway_url, settings.chat_gateway_token)
    else:
        transport = LoggingChatTransport()
    return {
        "geocoder": CachingGeocoder(inner, settings.geocode_cache_size),
        "distance": HaversineDistance(),
        "identity": identity,
        "transport": transport,
        "closeables": [a for a in (inner, identity, transport) if hasattr(a, "aclose")],
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_url = resolve_url(settings.database_url)
    action = await init_db(db_url)
    safe_url = re.sub(r"://[^:]+:[^@]+@", "://***:***@", db_url)
    logger.info("Database connected: %s (schema %s)", safe_url, action)

    adapters = build_adapters()
    engine = DispatchEngine(
        get_session_factory(),
        geocoder=adapters["geocoder"],
        distance=adapters["distance"],
        identity=adapters["identity"],
        transport=adapters["transport"],
    )
    app.state.dispatch = engine
    bg_task = asyncio.create_task(background_loop(engine))

    yield

    bg_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await bg_task
    for adapter in adapters["closeables"]:
        await adapter.aclose()
    await close_db()
    logger.info("Database closed")


app = FastAPI(
    title="ErrandHub",
    description="Task dispatch and offer negotiation for delivery and errand workers",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.include_router(api_router)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        {"error": f"{field}: {message}" if field else message, "code": "validation_error"},
        status_code=400,
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        {"error": f"Rate limit exceeded: {exc.detail}", "code": "rate_limited"}, status_code=429
    )


@app.get("/health")
async def health():
    return {"status": "ok"}


def main():
    import uvicorn

    uvicorn.run(
        "errandhub.main:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    main()
