"""FastAPI sync endpoint for the lottery mirror."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from walottery import __version__
from walottery.blockchain.client import LedgerClient
from walottery.lottery.store import DEFAULT_STORE_TIMEOUT, LotteryStore, call_store
from walottery.lottery.sync import LotteryNotFoundError, LotterySyncService
from walottery.utils.common import split_csv
from walottery.utils.config import get_config_value, get_float
from walottery.utils.logger import get_logger

logger = get_logger(__name__)

LIST_LIMIT = 50


class SyncLotteryRequest(BaseModel):
    lotteryId: Optional[str] = None
    txDigest: Optional[str] = None
    eventSeq: Optional[int] = None


class LotteryWebServer:
    """HTTP gateway: list mirror rows and register a lottery on demand."""

    def __init__(
        self,
        config: Dict[str, Any],
        blockchain_client: LedgerClient,
        store: LotteryStore,
    ) -> None:
        self.config = config
        self.blockchain_client = blockchain_client
        self._store = store
        self._store_timeout = get_float(config, "database.timeout_sec", DEFAULT_STORE_TIMEOUT)
        self._sync = LotterySyncService(blockchain_client, store, store_timeout=self._store_timeout)
        self._server = None

        self.app = FastAPI(
            title="walottery API",
            description="Lottery mirror listing and on-demand sync",
            version=__version__,
        )

        self._setup_middleware()
        self._setup_error_handlers()
        self._setup_routes()

    # ------------------------------------------------------------------
    # FastAPI scaffolding
    # ------------------------------------------------------------------
    def allowed_origins(self) -> List[str]:
        origins = split_csv(get_config_value(self.config, "server.allowed_origins", "*"))
        if not origins or "*" in origins:
            return ["*"]
        return origins

    def _setup_middleware(self) -> None:
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.allowed_origins(),
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["content-type"],
        )

    def _setup_error_handlers(self) -> None:
        @self.app.exception_handler(StarletteHTTPException)
        async def http_error(_request, exc: StarletteHTTPException) -> JSONResponse:
            return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

        @self.app.exception_handler(RequestValidationError)
        async def validation_error(_request, _exc: RequestValidationError) -> JSONResponse:
            return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    def _setup_routes(self) -> None:
        @self.app.get("/", response_class=PlainTextResponse)
        async def banner() -> str:
            return "walottery api"

        @self.app.get("/health")
        async def health_check() -> Dict[str, Any]:
            ledger = await self.blockchain_client.health_check()
            try:
                lotteries = await call_store(self._store.count_lotteries, timeout=self._store_timeout)
                store_health: Dict[str, Any] = {"status": "healthy", "lotteries": lotteries}
            except Exception as exc:
                logger.warning("Store health probe failed: %s", exc)
                store_health = {"status": "error"}
            return {
                "status": "ok" if ledger.get("status") == "healthy" and store_health["status"] == "healthy" else "degraded",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "components": {"ledger": ledger, "store": store_health},
            }

        @self.app.get("/lotteries")
        async def list_lotteries() -> List[Dict[str, Any]]:
            try:
                rows = await call_store(self._store.list_recent, LIST_LIMIT, timeout=self._store_timeout)
            except Exception as exc:
                logger.error("Failed to fetch lotteries: %s", exc)
                raise HTTPException(status_code=500, detail="Failed to fetch lotteries")
            return [row.to_dict() for row in rows]

        @self.app.post("/lotteries")
        async def sync_lottery(request: SyncLotteryRequest) -> Dict[str, Any]:
            if not request.lotteryId:
                raise HTTPException(status_code=400, detail="lotteryId is required")
            try:
                await self._sync.sync_lottery(request.lotteryId, request.txDigest, request.eventSeq)
            except LotteryNotFoundError:
                raise HTTPException(status_code=404, detail="Lottery not found on-chain")
            except Exception as exc:
                logger.error("Failed to upsert lottery %s: %s", request.lotteryId, exc)
                raise HTTPException(status_code=500, detail="Failed to sync lottery")
            return {"success": True}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, host: str = "0.0.0.0", port: int = 4000) -> None:
        import uvicorn

        logger.info("Starting lottery API on %s:%s", host, port)
        config = uvicorn.Config(self.app, host=host, port=port, log_level="info", access_log=True)
        self._server = uvicorn.Server(config)
        try:
            await self._server.serve()
        finally:
            logger.info("Lottery API stopped")

    @property
    def exit_requested(self) -> bool:
        """True once uvicorn was told to exit, by `stop()` or by a signal it captured."""
        return self._server is not None and bool(self._server.should_exit)

    async def stop(self) -> None:
        if self._server is not None:
            logger.info("Stopping lottery API")
            self._server.should_exit = True
