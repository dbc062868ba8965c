from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import os

from core.config import logger, APP_NAME, PORTAL_BASE_URL  # type: ignore
from core.services import usage_recorder

# Routers
from routers import family, access_tokens, distribution  # type: ignore

app = FastAPI(title=f"{APP_NAME} Access")

# ---- CORS setup ----
_default_origins = ",".join([
    PORTAL_BASE_URL,
    "http://localhost:3000",
    "http://127.0.0.1:3000",
])
_origins_env = os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or os.getenv("FRONTEND_ORIGIN") or _default_origins
ALLOWED_ORIGINS = [o.strip() for o in _origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Security headers ---
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    # Gallery links are bearer credentials
    if request.url.path.startswith("/f/") or request.url.path.startswith("/api/family/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


app.include_router(family.router)
app.include_router(access_tokens.router)
app.include_router(distribution.router)


@app.on_event("startup")
async def _init_postgres_schema():
    try:
        from core.database import init_db
        init_db()
    except Exception as _ex:
        logger.warning(f"init_db failed: {_ex}")


@app.on_event("startup")
async def _start_usage_recorder():
    usage_recorder.start()


@app.on_event("shutdown")
async def _stop_usage_recorder():
    usage_recorder.stop()
    if usage_recorder.dropped:
        logger.warning(f"[usage] {usage_recorder.dropped} usage events dropped since startup")


@app.get("/health")
async def health():
    return {"ok": True, "service": APP_NAME}
