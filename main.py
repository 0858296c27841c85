"""
main.py — PersonaChain Identity Core Service
==============================================
Startup order:
    1. Logging from settings (console, plus LOG_FILE when set)
    2. Tables created on the configured database
    3. Services built once and the ledger backend connected
    4. Proofs and nullifiers that expired while the service was down are pruned

Routers are thin: they translate HTTP into service calls (modules/services.py)
and core errors into coarse HTTP errors (api/errors.py).

Start it with:
    uvicorn main:app --reload --port 8000
or:
    python main.py
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

from config import settings
from db.session import AsyncSessionLocal, init_db
from modules.services import build_services

from api.routes_identity import router as identity_router
from api.routes_credentials import router as credentials_router
from api.routes_proofs import router as proofs_router
from api.routes_ledger import router as ledger_router


# ── Logging ───────────────────────────────────────────────────────────────────
log_handlers = [logging.StreamHandler()]
if settings.LOG_FILE:
    log_handlers.append(logging.FileHandler(settings.LOG_FILE))

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    handlers=log_handlers,
)
logger = logging.getLogger("personachain.main")


# ── Startup / shutdown ────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} starting ({settings.ENVIRONMENT})")

    await init_db()
    logger.info("✓ Tables ready")

    services = build_services(settings, AsyncSessionLocal)
    await services.ledger.connect()
    logger.info(f"✓ Ledger backend: {settings.LEDGER_BACKEND} / {settings.LEDGER_CHAIN_ID}")
    app.state.services = services

    pruned = await services.proofs.prune_expired()
    logger.info(f"✓ Pruned {pruned['proofs']} expired proofs, {pruned['nullifiers']} nullifiers")
    logger.info(f"{settings.APP_NAME} accepting requests on :{settings.PORT}")

    yield

    logger.info("Stopping: disconnecting ledger backend")
    await services.ledger.disconnect()


# ── Application ───────────────────────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Encrypted identity storage, ledger anchoring and selective-disclosure proofs",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
)
if settings.ENVIRONMENT == "production":
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.TRUSTED_HOSTS)

app.include_router(identity_router,    prefix="/identity",    tags=["Identity"])
app.include_router(credentials_router, prefix="/credentials", tags=["Credentials"])
app.include_router(proofs_router,      prefix="/proofs",      tags=["Proofs"])
app.include_router(ledger_router,      prefix="/ledger",      tags=["Ledger"])


# ── Status endpoints ──────────────────────────────────────────────────────────
@app.get("/", tags=["Status"])
async def root():
    return {
        "system": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "operational",
        "ledger": settings.LEDGER_BACKEND,
        "didMethod": settings.DID_METHOD,
    }


@app.get("/health-check", tags=["Status"])
async def health_check(request: Request):
    """Database, ledger and crypto configuration, each checked for real."""
    services = request.app.state.services
    return {
        "api": "ok",
        "database": await services.storage.ping(),
        "ledger": await services.ledger.ping(),
        "crypto": services.crypto.is_ready(),
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT,
                reload=settings.DEBUG, log_level=settings.LOG_LEVEL.lower())
