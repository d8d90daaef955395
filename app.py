# ---- Resolve & inject ALL secrets BEFORE importing modules that read env ----
from src.secrets import get_secret

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from src.api_routes import router as api_router
from src.db import get_engine
from src.errors import MarketplaceError
from src.identity import add_login_routes, register_oauth_provider
from src.marketplace_schema import ensure_marketplace_schema
from src.request_timing import request_timing_middleware

logger = logging.getLogger(__name__)

app = FastAPI(title="Profile marketplace")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
app.middleware("http")(request_timing_middleware)

# Optional: session secret via secret manager (fallback default for local runs)
session_secret = get_secret("SESSION_SECRET", default="dev-session-secret")
app.add_middleware(SessionMiddleware, secret_key=session_secret)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request.error path=%s type=%s message=%s", request.url.path, exc.error_type, exc.message)
    else:
        logger.info("request.rejected path=%s type=%s status=%s", request.url.path, exc.error_type, exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.as_payload())


@app.on_event("startup")
def _bootstrap_schema() -> None:
    if os.getenv("MARKETPLACE_SCHEMA_BOOTSTRAP", "").strip().lower() in {"1", "true", "yes", "on"}:
        ensure_marketplace_schema(get_engine())


@app.get("/_routes")
def _routes():
    return [getattr(r, "path", str(r)) for r in app.router.routes]


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# OAuth client config (now guaranteed in env; also available via get_secret)
GOOGLE_CLIENT_ID     = get_secret("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = get_secret("GOOGLE_CLIENT_SECRET")

register_oauth_provider(
    name="google",
    server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
    client_id=GOOGLE_CLIENT_ID,
    client_secret=GOOGLE_CLIENT_SECRET,
    client_kwargs={
        "scope": "openid email profile",
        "timeout": 30,
    },
)
add_login_routes(app)

app.include_router(api_router)
