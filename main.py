"""
MineAI Billing Backend
Entitlement resolution, PayFast checkout/ITN and free-tier quotas
"""

from pathlib import Path
import logging
import traceback

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

# Import routers
from routers.billing_router import billing_router
from routers.entitlements_router import entitlements_router
from routers.admin_router import admin_router
from utils.rate_limit import RateLimiterMiddleware
from database import init_db
from config.settings import settings, is_production_env

# ============================================================================
# LOGGING
# ============================================================================

# Write ALL events to ./logs/app.log
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="MineAI Billing")


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal Server Error"}
            )


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # Only set HSTS in production where HTTPS is guaranteed
        if is_production_env():
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(RateLimiterMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.site_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# STARTUP CHECKS
# ============================================================================

# Billing keys are checked at startup (non-fatal) and again per request
BILLING_KEY_MAP = {
    "JWT_SECRET_KEY": settings.jwt_secret_key,
    "PAYFAST_MERCHANT_ID": settings.payfast_merchant_id,
    "PAYFAST_MERCHANT_KEY": settings.payfast_merchant_key,
    "SERVICE_DATABASE_URL": settings.service_database_url,
}


@app.on_event("startup")
async def validate_keys():
    """Validate required keys are present (non-fatal)"""
    missing = [key for key, value in BILLING_KEY_MAP.items() if not value]
    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All billing environment variables are set")

    if not (settings.payfast_passphrase or "").strip():
        logger.warning("PAYFAST_PASSPHRASE is not set. Signatures will be computed without a passphrase.")
    logger.info(f"PayFast mode: {'sandbox' if settings.payfast_sandbox else 'production'}")


# Initialize database on startup
@app.on_event("startup")
async def initialize_database():
    """Initialize the database and create all tables."""
    try:
        await init_db()
        logger.info("✅ Database initialized successfully")
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise


@app.get("/health")
async def health():
    return {"ok": True}


# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(billing_router)
app.include_router(entitlements_router)
app.include_router(admin_router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
