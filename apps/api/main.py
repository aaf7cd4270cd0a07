"""
Voice Studio - FastAPI Backend
Main application entry point with health check and API routing.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import account, billing, health, tts
from services.errors import AccountNotFound, GenerationError, RateLimited
from services.rate_limiter import get_rate_limiter, rate_limit_headers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Voice Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.PROVIDER_API_KEY:
        print("⚠️ PROVIDER_API_KEY is not configured; generation requests will fail.")
    yield
    # Shutdown
    try:
        await get_rate_limiter().store.aclose()
    except Exception as exc:
        print(f"⚠️ Rate limit store close failed: {exc}")
    print("👋 Shutting down API...")


app = FastAPI(
    title="Voice Studio API",
    description="Metered text-to-speech generation with credit billing",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = rate_limit_headers(exc.decision) if exc.decision is not None else {}
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(request: Request, exc: AccountNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(tts.router, prefix="/tts", tags=["Generation"])
app.include_router(account.router, prefix="/account", tags=["Account"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Voice Studio API",
        "version": "0.1.0",
        "status": "running"
    }
