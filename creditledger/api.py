import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from .config import Settings, settings as default_settings
from .errors import (
    AccountNotFound,
    IdempotencyConflictError,
    InsufficientFunds,
    InvalidAmount,
    LedgerStoreError,
    MalformedEvent,
    MalformedMetadata,
    ProviderFailure,
    SignatureInvalid,
    StaleTimestamp,
    Unauthorized,
    UnsupportedProvider,
)
from .models import AiProcessRequest, Balances, ChargeRequest, LedgerHistoryResponse, TtsRequest, User
from .providers import ProviderRegistry, VoiceCatalog, build_registry, build_voice_catalog
from .service import ChargeEngine
from .sql import SqlStorage
from .webhook import WebhookCreditApplier

log = logging.getLogger(__name__)


def _provider_error(exc: ProviderFailure) -> JSONResponse:
    refund = exc.refund
    status_code = status.HTTP_400_BAD_REQUEST if isinstance(exc, UnsupportedProvider) else status.HTTP_502_BAD_GATEWAY
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "error": str(exc),
            "provider": exc.provider,
            "refunded": bool(refund and refund.ok),
        },
    )


def create_app(
    engine: Optional[ChargeEngine] = None,
    applier: Optional[WebhookCreditApplier] = None,
    registry: Optional[ProviderRegistry] = None,
    catalog: Optional[VoiceCatalog] = None,
    config: Optional[Settings] = None,
) -> FastAPI:
    config = config or default_settings
    if engine is None:
        storage = SqlStorage(config.DATABASE_URL, timeout=config.LEDGER_STORE_TIMEOUT_SECONDS)
        if config.AUTO_CREATE_DB_SCHEMA:
            storage.create_schema()
        engine = ChargeEngine(
            storage,
            provider_timeout=config.PROVIDER_TIMEOUT_SECONDS,
            service_token=config.SERVICE_API_TOKEN,
            provider_workers=config.PROVIDER_MAX_WORKERS,
        )
    if applier is None:
        applier = WebhookCreditApplier(
            engine.storage,
            config.STRIPE_WEBHOOK_SECRET,
            tolerance_seconds=config.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            purchase_event_types=tuple(config.PURCHASE_EVENT_TYPES),
            clock=engine.clock,
        )
    registry = registry or build_registry(config)
    catalog = catalog or build_voice_catalog(registry, config, clock=engine.clock)

    app = FastAPI(
        title="Credit Ledger API",
        description="Metered credit ledger with idempotent charges, refunds and purchase webhooks",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def current_user(authorization: Optional[str]) -> User:
        try:
            return engine.authenticate(authorization)
        except Unauthorized as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "credit-ledger"}

    @app.post("/api/charge", tags=["Credits"])
    def charge(request: ChargeRequest, authorization: Optional[str] = Header(default=None)):
        try:
            result = engine.charge_request(request, authorization)
        except Unauthorized as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
        except AccountNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except InvalidAmount as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except IdempotencyConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

        if result.ok:
            return result.model_dump(by_alias=True, exclude_none=True)
        body = result.model_dump(by_alias=True, exclude_none=True, exclude={"existing"})
        if result.reason == "insufficient_credits":
            return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=body)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)

    @app.post("/api/tts/generate", tags=["Paid actions"])
    def tts_generate(request: TtsRequest, authorization: Optional[str] = Header(default=None)):
        user = current_user(authorization)
        if not request.text or not request.voice_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="text and voiceId required")
        action = registry.tts(request.provider)
        try:
            _, result = engine.charge_and_execute(user, action, request, request.reference_tx_id)
        except InsufficientFunds as e:
            return JSONResponse(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                content={"ok": False, "reason": "insufficient_credits", "balance": e.balance},
            )
        except ProviderFailure as e:
            return _provider_error(e)
        except IdempotencyConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except LedgerStoreError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        return Response(content=result.audio or b"", media_type=result.content_type)

    @app.post("/api/ai/process", tags=["Paid actions"])
    def ai_process(request: AiProcessRequest, authorization: Optional[str] = Header(default=None)):
        user = current_user(authorization)
        if not request.text or not request.provider or not request.prompt:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="text, provider, and prompt are required")
        action = registry.ai(request.provider)
        try:
            charge_result, result = engine.charge_and_execute(user, action, request, request.reference_tx_id)
        except InsufficientFunds as e:
            return JSONResponse(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                content={"ok": False, "reason": "insufficient_credits", "balance": e.balance},
            )
        except ProviderFailure as e:
            return _provider_error(e)
        except IdempotencyConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except LedgerStoreError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        return {
            "ok": True,
            "processedText": result.text,
            "deductedCredits": action.cost(request),
            "deductionId": charge_result.deduction_id,
        }

    @app.post("/api/stripe/webhook", tags=["Webhooks"])
    async def stripe_webhook(request: Request):
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        try:
            outcome = await run_in_threadpool(applier.apply, payload, signature)
        except (SignatureInvalid, StaleTimestamp) as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid signature: {e}")
        except (MalformedEvent, MalformedMetadata) as e:
            log.error("webhook.malformed", extra={"error": str(e)})
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except AccountNotFound as e:
            log.error("webhook.user_not_found", extra={"error": str(e)})
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        return {"received": True, "state": outcome.state.value, "eventId": outcome.event_id}

    @app.get("/api/db/user", response_model=Balances, tags=["Credits"])
    def user_balances(authorization: Optional[str] = Header(default=None)) -> Balances:
        user = current_user(authorization)
        try:
            return engine.get_balances(user.id)
        except AccountNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.get("/api/ledger", response_model=LedgerHistoryResponse, tags=["Credits"])
    def ledger_history(
        limit: int = 50,
        offset: int = 0,
        authorization: Optional[str] = Header(default=None),
    ) -> LedgerHistoryResponse:
        user = current_user(authorization)
        try:
            return engine.get_history(user.id, limit, offset)
        except AccountNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.get("/api/auth/validate", tags=["Auth"])
    def validate_token(token: Optional[str] = None, authorization: Optional[str] = Header(default=None)):
        if authorization:
            user = current_user(authorization)
        elif token:
            try:
                user = engine.user_for_token(token)
            except Unauthorized as e:
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
        else:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing token")
        return {"ok": True, "user": {"id": user.id}}

    @app.get("/api/voices", tags=["Providers"])
    def list_voices(provider: str = "elevenlabs"):
        try:
            return {"ok": True, "items": catalog.voices(provider)}
        except UnsupportedProvider as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except ProviderFailure as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return app
