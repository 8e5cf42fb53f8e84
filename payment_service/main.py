"""
Payment Service

M-Pesa subscription payments: STK push initiation and the gateway callback
endpoints. Run with ``uvicorn --factory payment_service.main:create_app``.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from common.error_handling import CallbackError, ConfigurationError, ErrorCodes, PersistenceError, add_error_handlers, create_error_response
from common.redis_client import RedisClient
from common.schemas import StkPushRequest, decode_envelope_callback, decode_flat_callback
from common.security import verify_token
from common.settings import Settings, settings
from common.tracing import payments_tracer, tracing_middleware
from payment_service.callbacks import CallbackConfig, CallbackProcessor
from payment_service.models import SubscriptionPayment
from payment_service.mpesa import DarajaClient, DarajaConfig
from payment_service.reconciler import PaymentReconciler
from payment_service.replay import NonceLedger, RedisNonceLedger, ReplayConfig, ReplayGuard, StoreNonceLedger
from payment_service.store import PaymentStore, SqlAlchemyPaymentStore
from payment_service.subscriptions import SubscriptionActivator

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CORS_ALLOW_HEADERS = "authorization, x-client-info, apikey, content-type, x-trace-id"
CALLBACK_PATHS = ("/mpesa/callback", "/mpesa/payment")

def cors_headers(origin: Optional[str], allowed: list) -> dict:
    headers = {
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Vary": "Origin",
    }
    if origin and origin in allowed:
        headers["Access-Control-Allow-Origin"] = origin
    elif allowed:
        headers["Access-Control-Allow-Origin"] = allowed[0]
    return headers

def _bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    return authorization.split(" ", 1)[1]

async def user_auth(authorization: Optional[str] = Header(None)) -> str:
    """Subject of a user token minted by the auth service"""
    try:
        claims = verify_token(_bearer(authorization))
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid token: {e}")
    if not claims.get("sub"):
        raise HTTPException(401, "token has no subject")
    return claims["sub"]

# Simple dependency to check internal auth (down-scoped token)
async def internal_auth(authorization: Optional[str] = Header(None)):
    try:
        verify_token(_bearer(authorization), audience="payments")
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid internal token: {e}")

def build_nonce_ledger(cfg: Settings, store: PaymentStore) -> NonceLedger:
    if cfg.nonce_backend == "redis":
        return RedisNonceLedger(RedisClient(cfg.redis_url))
    if cfg.nonce_backend != "database":
        raise ConfigurationError(f"Unknown nonce backend: {cfg.nonce_backend}")
    return StoreNonceLedger(store)

def create_app(cfg: Optional[Settings] = None, store: Optional[PaymentStore] = None,
               nonce_ledger: Optional[NonceLedger] = None, mpesa_client: Optional[DarajaClient] = None) -> FastAPI:
    cfg = cfg or settings
    store = store or SqlAlchemyPaymentStore.from_url(cfg.database_url)
    nonce_ledger = nonce_ledger or build_nonce_ledger(cfg, store)
    mpesa_client = mpesa_client or DarajaClient(DarajaConfig.from_settings(cfg))

    activator = SubscriptionActivator(store)
    processor = CallbackProcessor(
        store,
        ReplayGuard(nonce_ledger, ReplayConfig(cfg.replay_window_seconds, cfg.require_nonce)),
        PaymentReconciler(store, activator),
        CallbackConfig.from_settings(cfg),
        payments_tracer,
    )

    if not cfg.callback_secret:
        if cfg.require_signature:
            logger.error("MPESA_CALLBACK_SECRET is not set; every callback will be rejected")
        else:
            logger.warning("MPESA_CALLBACK_SECRET is not set; callbacks are accepted unsigned")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.create_schema()
        logger.info(f"Payment service starting ({cfg.environment}, nonce backend: {cfg.nonce_backend})")
        yield

    app = FastAPI(title="Payment Service", version="1.0.0", lifespan=lifespan)
    app.state.store = store
    app.state.processor = processor
    add_error_handlers(app)

    # Inner to add_tracing: request.state.trace_id is already set here
    @app.middleware("http")
    async def origin_guard(request: Request, call_next):
        origin = request.headers.get("origin")
        allowed = cfg.allowed_origins()
        trace_id = getattr(request.state, "trace_id", None)
        if origin and origin not in allowed and request.method == "POST" and request.url.path in CALLBACK_PATHS:
            logger.warning(f"Rejected callback from origin {origin}")
            # callbacks are audited even when refused here
            outcome = await run_in_threadpool(
                processor.reject, request.url.path, await request.body(), request.headers,
                CallbackError(ErrorCodes.ORIGIN_NOT_ALLOWED, "Origin not allowed", 403), trace_id,
            )
            response = JSONResponse(status_code=outcome.status_code, content=outcome.body)
        elif origin and origin not in allowed:
            logger.warning(f"Rejected request from origin {origin}")
            response = create_error_response(
                ErrorCodes.ORIGIN_NOT_ALLOWED, "Origin not allowed", status_code=403, trace_id=trace_id,
            )
        elif request.method == "OPTIONS":
            response = PlainTextResponse("ok")
        else:
            response = await call_next(request)
        response.headers.update(cors_headers(origin, allowed))
        return response

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, payments_tracer)

    async def handle_callback(request: Request, endpoint: str, decode) -> JSONResponse:
        raw_body = await request.body()
        outcome = await run_in_threadpool(
            processor.handle, endpoint, raw_body, request.headers, decode, request.state.trace_id,
        )
        return JSONResponse(status_code=outcome.status_code, content=outcome.body)

    @app.post("/mpesa/callback")
    async def mpesa_callback(request: Request):
        """Daraja STK callback envelope: {"Body": {"stkCallback": {...}}}"""
        return await handle_callback(request, "/mpesa/callback", decode_envelope_callback)

    @app.post("/mpesa/payment")
    async def mpesa_payment(request: Request):
        """Flat callback body, stkCallback fields at the top level"""
        return await handle_callback(request, "/mpesa/payment", decode_flat_callback)

    @app.post("/mpesa/stk-push")
    async def stk_push(req: StkPushRequest, user_id: str = Depends(user_auth)):
        if not mpesa_client.config.configured:
            raise ConfigurationError("Missing M-Pesa configuration", status_code=400)

        result = await run_in_threadpool(
            mpesa_client.initiate_stk_push, req.phone_number, req.amount, req.tier, req.account_reference,
        )
        payment = SubscriptionPayment(
            user_id=user_id,
            tier=req.tier,
            amount=req.amount,
            phone_number=req.phone_number,
            payment_method="mpesa",
            merchant_request_id=result.MerchantRequestID,
            checkout_request_id=result.CheckoutRequestID,
        )
        try:
            await run_in_threadpool(store.create_payment, payment)
        except PersistenceError as e:
            # the push already reached the phone; its callback will surface as PAYMENT_NOT_FOUND
            logger.error(f"Pending payment not recorded for {result.CheckoutRequestID}: {e.message}")
            raise HTTPException(500, "Failed to record pending payment")

        logger.info(f"STK push initiated for user {user_id}, checkout {result.CheckoutRequestID}")
        return {
            "success": True,
            "message": "STK Push initiated successfully",
            "data": {
                "merchantRequestId": result.MerchantRequestID,
                "checkoutRequestId": result.CheckoutRequestID,
                "responseCode": result.ResponseCode,
                "customerMessage": result.CustomerMessage,
            },
        }

    @app.post("/admin/subscriptions/resync", dependencies=[Depends(internal_auth)])
    async def resync_subscriptions():
        """Apply tiers for completed payments whose activation never ran"""
        try:
            result = await run_in_threadpool(activator.resync)
        except PersistenceError as e:
            raise HTTPException(500, e.message)
        logger.info(f"Resync activated {len(result['activated'])}, failed {len(result['failed'])}")
        return result

    @app.get("/health")
    async def health():
        """Health check"""
        return {
            "status": "healthy",
            "service": "payment-service",
            "environment": cfg.environment,
            "signature_verification": bool(cfg.callback_secret),
            "nonce_backend": cfg.nonce_backend,
        }

    return app
