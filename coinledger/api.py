"""
HTTP API for the coin ledger backend.

Public routes:
- Health check (GET /)
- Signed file proxy (GET /proxy/file)
- View rewards (POST /views)
- Chapter purchases (POST /purchase)
- Account balance and history (GET /accounts/{id}, GET /accounts/{id}/ledger)

Admin routes (X-API-Key):
- Coin deposits (POST /accounts/{id}/deposit)
- Proxy link signing (GET /proxy/sign)
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from . import __version__
from .auth import verify_api_token
from .config import DEFAULT_SIGNING_SECRET, Settings, get_settings
from .errors import (
    AccountNotFoundError,
    AuthFailureError,
    ContentionError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidRequestError,
    UpstreamFailureError,
)
from .models import (
    Account,
    DepositRequest,
    DepositResult,
    HealthResponse,
    LedgerHistoryResponse,
    PurchaseRequest,
    PurchaseResult,
    SignedUrlResponse,
    ViewEvent,
    ViewRequest,
    ViewResult,
)
from .proxy import FileProxy
from .service import LedgerService
from .signing import UrlSigner
from .store import AccountStore, build_store

logger = structlog.get_logger()


def configure_logging(level: str) -> None:
    logging.basicConfig(format="%(message)s", level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def get_service(request: Request) -> LedgerService:
    service: Optional[LedgerService] = request.app.state.ledger_service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Ledger backend not configured. Set LEDGER_DATABASE_URL to enable purchases.",
        )
    return service


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[AccountStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    if store is None:
        store = build_store(settings.ledger_database_url)
    signer = UrlSigner(settings.signing_secret)
    file_proxy = FileProxy(http_client, timeout=settings.proxy_timeout_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "api_started",
            version=__version__,
            host=settings.host,
            port=settings.port,
            ledger=store is not None,
            signing_secret_set=settings.signing_secret != DEFAULT_SIGNING_SECRET,
        )
        yield
        await file_proxy.close()
        if store is not None:
            store.close()
        logger.info("api_stopped")

    app = FastAPI(
        title="Coin Ledger API",
        description="Chapter purchases, view rewards and signed file proxy",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.signer = signer
    app.state.file_proxy = file_proxy
    app.state.ledger_service = LedgerService.from_settings(store, settings) if store is not None else None

    if settings.signing_secret == DEFAULT_SIGNING_SECRET:
        logger.warning("signing_secret_default", hint="set SIGNING_SECRET")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def missing_params_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "missing params", "detail": jsonable_errors(exc)},
        )

    @app.get("/", response_model=HealthResponse, tags=["System"])
    def health_check() -> HealthResponse:
        return HealthResponse(ok=True, service=settings.service_name)

    @app.get("/proxy/file", tags=["Proxy"])
    async def proxy_file(url: Optional[str] = None, sig: Optional[str] = None) -> StreamingResponse:
        if not url or not sig:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing url or sig")
        try:
            signer.require(url, sig)
        except AuthFailureError as e:
            logger.warning("proxy_signature_rejected", url=url)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

        try:
            upstream = await file_proxy.open(url)
        except UpstreamFailureError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

        headers = {"Cache-Control": f"public, max-age={settings.proxy_cache_max_age}"}
        return StreamingResponse(
            upstream.aiter_bytes(),
            status_code=status.HTTP_200_OK,
            media_type=upstream.headers.get("content-type", "application/octet-stream"),
            headers=headers,
            background=BackgroundTask(upstream.aclose),
        )

    @app.get("/proxy/sign", response_model=SignedUrlResponse, tags=["Proxy"],
             dependencies=[Depends(verify_api_token)])
    def sign_proxy_url(url: str) -> SignedUrlResponse:
        return SignedUrlResponse(url=url, sig=signer.sign(url), path=signer.signed_path(url))

    @app.post("/views", response_model=ViewResult, tags=["Ledger"])
    def record_view(body: ViewRequest, request: Request) -> ViewResult:
        service: Optional[LedgerService] = request.app.state.ledger_service
        if service is None:
            return ViewResult(coins_awarded=0)
        event = ViewEvent(**body.model_dump(), timestamp=service.clock())
        try:
            return service.record_view(event)
        except InvalidRequestError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except ContentionError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    @app.post("/purchase", response_model=PurchaseResult, tags=["Ledger"])
    def purchase(
        body: PurchaseRequest,
        response: Response,
        service: LedgerService = Depends(get_service),
    ) -> PurchaseResult:
        try:
            result, replayed = service.purchase(body)
        except InvalidRequestError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except AccountNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except InsufficientFundsError as e:
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
        except (ContentionError, IdempotencyConflictError) as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        if replayed:
            response.headers["Idempotent-Replayed"] = "true"
        return result

    @app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
    def get_account(account_id: str, service: LedgerService = Depends(get_service)) -> Account:
        try:
            return service.get_account(account_id)
        except AccountNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.get("/accounts/{account_id}/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
    def get_account_ledger(
        account_id: str,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        service: LedgerService = Depends(get_service),
    ) -> LedgerHistoryResponse:
        try:
            return service.get_ledger_history(account_id, limit, offset)
        except AccountNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post("/accounts/{account_id}/deposit", response_model=DepositResult, tags=["Accounts"],
              dependencies=[Depends(verify_api_token)])
    def deposit(
        account_id: str,
        body: DepositRequest,
        service: LedgerService = Depends(get_service),
    ) -> DepositResult:
        try:
            return service.deposit(account_id, body)
        except InvalidRequestError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except (ContentionError, IdempotencyConflictError) as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)
