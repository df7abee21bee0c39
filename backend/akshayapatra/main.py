import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from akshayapatra.config import settings
from akshayapatra.middleware.exceptions import register_exception_handlers
from akshayapatra.middleware.security import SecurityHeadersMiddleware
from akshayapatra.routers import cart, flags, health, payments, profile, profile_setup, schemes
from akshayapatra.utils.cache import close_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.store_backend == "sql":
        from akshayapatra.database import create_tables

        await create_tables()
    logger.info(f"Akshayapatra API started ({settings.environment}, store={settings.store_backend})")
    yield
    await close_redis()


app = FastAPI(
    title="Akshayapatra",
    description="Profile setup, registration fee and local state API",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware (outermost first) ─────────────────────────────
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(profile.router, prefix="/api/profile", tags=["profile"])
app.include_router(schemes.router, prefix="/api/schemes", tags=["schemes"])
app.include_router(profile_setup.router, prefix="/api/profile-setup", tags=["profile-setup"])
app.include_router(payments.router, prefix="/api/payments", tags=["payments"])
app.include_router(cart.router, prefix="/api/cart", tags=["cart"])
app.include_router(flags.router, prefix="/api/flags", tags=["flags"])
