from __future__ import annotations

import logging
import os
import sqlite3
from functools import lru_cache
from typing import Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chain_gateway import SolanaGateway
from claim_models import HealthOut
from claim_store import connect, init_db, now_unix
from faucet import create_faucet_router
from faucet_errors import FaucetError
from faucet_settings import FaucetSettings, load_settings
from stats import create_stats_router
from stats_store import iso_utc
from ttl_cache import TTLCache

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("faucet")


# ---------------------------
# Gateway
# ---------------------------
@lru_cache(maxsize=4)
def default_gateway(settings: FaucetSettings) -> SolanaGateway:
    # one gateway per distinct settings value; keeps keypair / mint info warm
    return SolanaGateway(settings)


# ---------------------------
# App
# ---------------------------
def create_app(
    settings_func: Callable[[], FaucetSettings] = load_settings,
    gateway_func: Callable[[FaucetSettings], SolanaGateway] = default_gateway,
) -> FastAPI:
    boot = settings_func()

    def db() -> sqlite3.Connection:
        return connect(settings_func().db_path)

    app = FastAPI(title="FOGO Testnet Faucet")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(boot.cors_origins),
        allow_credentials="*" not in boot.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup():
        con = db()
        try:
            init_db(con)
        finally:
            con.close()
        log.info("[startup] db=%s rpc=%s bonus=%s", boot.db_path, boot.rpc_url,
                 boot.bonus_token_mint or "disabled")

    # ---------------------------
    # Error rendering: {"error": ...}
    # ---------------------------
    @app.exception_handler(FaucetError)
    async def _faucet_error(request: Request, exc: FaucetError):
        if exc.status_code >= 500:
            log.error("[api] %s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        fields = {str(part) for err in exc.errors() for part in err.get("loc", ())}
        message = "Invalid wallet address format" if "walletAddress" in fields else "Invalid request format"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        log.exception("[api] unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Failed to process claim"})

    cache = TTLCache()
    app.include_router(create_faucet_router(db, settings_func, gateway_func, cache), prefix="/api")
    app.include_router(create_stats_router(db, settings_func, gateway_func, cache), prefix="/api")

    @app.get("/api/health", response_model=HealthOut)
    def health(chain: bool = False):
        database = "connected"
        try:
            con = db()
            try:
                con.execute("SELECT 1").fetchone()
            finally:
                con.close()
        except sqlite3.Error as e:
            log.error("[health] database check failed: %s", e)
            database = "disconnected"

        chain_state: Optional[str] = None
        if chain:
            result = gateway_func(settings_func()).health_check()
            chain_state = "ready" if result.get("isReady") else f"unavailable: {result.get('error')}"

        healthy = database == "connected" and (chain_state is None or chain_state == "ready")
        body = HealthOut(
            status="healthy" if healthy else "unhealthy",
            timestamp=iso_utc(now_unix()),
            database=database,
            chain=chain_state,
        )
        if not healthy:
            return JSONResponse(status_code=503, content=body.model_dump())
        return body

    return app


app = create_app()
