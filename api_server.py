"""FastAPI server for the Nelo WhatsApp assistant."""

import asyncio
from typing import Optional, Dict, Any, Set

from fastapi import FastAPI, HTTPException, Depends, Request, Header, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError as PydanticValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from nelo.agents.command_engine import CommandEngine
from nelo.agents.conversation_state import ConversationState
from nelo.agents.message_processor import MessageProcessor
from nelo.schemas.core import WhatsAppWebhook, WhatsAppInboundMessage, BroadcastRequest, StandardResponse
from nelo.services.custody_service import CustodyGateway
from nelo.services.fee_service import NetworkPriceOracle, FeeCalculator
from nelo.services.kyc_service import KYCService
from nelo.services.name_resolver import NameResolver
from nelo.services.payment_service import PaymentService
from nelo.services.whatsapp_service import WhatsAppService
from nelo.utils.config import settings
from nelo.utils.logger import get_logger
from nelo.utils.mongodb_manager import MongoDBManager
from nelo.workers.engagement_scheduler import EngagementScheduler
from nelo.workers.notification_dispatcher import NotificationDispatcher
from nelo.workers.settlement_queue import SettlementQueue

logger = get_logger("api_server")

# Wired on startup; tests may pre-populate it with fakes
services: Dict[str, Any] = {}
_inflight: Set[asyncio.Task] = set()


def build_services() -> Dict[str, Any]:
    """Construct the store, capabilities, workers and the command engine."""
    store = MongoDBManager()
    sessions = ConversationState()
    oracle = NetworkPriceOracle()
    gateway = CustodyGateway()
    dispatcher = NotificationDispatcher(WhatsAppService(), store=store)
    settlement = SettlementQueue(store, gateway, dispatcher)
    engine = CommandEngine(
        store=store,
        gateway=gateway,
        kyc=KYCService(),
        resolver=NameResolver(),
        payments=PaymentService(),
        fees=FeeCalculator(oracle),
        settlement=settlement,
        sessions=sessions,
        parser=MessageProcessor(),
    )
    scheduler = EngagementScheduler(store, dispatcher, oracle=oracle) if settings.enable_scheduler else None
    return {
        "store": store,
        "engine": engine,
        "dispatcher": dispatcher,
        "settlement": settlement,
        "scheduler": scheduler,
    }


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="WhatsApp financial assistant for cNGN wallets, transfers and virtual cards",
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-API-Key", "X-Hub-Signature-256"],
)


# General exception handler
@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "status": False,
            "message": "An unexpected error occurred",
            "data": None
        }
    )


@app.on_event("startup")
async def startup_services():
    """Wire services and start background workers."""
    if "engine" not in services:
        services.update(build_services())

    services["dispatcher"].start()
    await services["settlement"].start()
    if services.get("scheduler") is not None:
        services["scheduler"].start()

    if not settings.twilio_account_sid:
        logger.warning("Twilio is not configured; replies will be logged and dropped")
    logger.info(f"🚀 {settings.app_name} v{settings.app_version} ready")


@app.on_event("shutdown")
async def shutdown_services():
    if services.get("scheduler") is not None:
        services["scheduler"].shutdown()
    for task in list(_inflight):
        task.cancel()
    if "settlement" in services:
        await services["settlement"].stop()
    if "dispatcher" in services:
        await services["dispatcher"].stop()
    if "store" in services:
        services["store"].close()
    logger.info("👋 Services stopped")


# Dependency to check API key for protected endpoints
async def verify_api_key(x_api_key: Optional[str] = Header(None)):
    """Verify API key for admin endpoints."""
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if x_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
    return True


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    store = services.get("store")
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "database": "mongodb" if store is not None and store.is_connected() else "local",
    }


# =============================================================================
# WHATSAPP WEBHOOK ENDPOINTS
# =============================================================================

async def handle_text_message(message: WhatsAppInboundMessage) -> None:
    """Run the engine for one message and send its reply through the channel."""
    user_id = message.from_
    reply = await services["engine"].process_message(user_id, message.text.body, whatsapp_number=user_id)
    if reply:
        await services["dispatcher"].send(user_id, reply)


def _spawn(message: WhatsAppInboundMessage) -> asyncio.Task:
    task = asyncio.create_task(handle_text_message(message))
    _inflight.add(task)
    task.add_done_callback(_inflight.discard)
    return task


@app.get("/whatsapp/webhook")
async def verify_whatsapp_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """WhatsApp webhook verification handshake."""
    if hub_mode == "subscribe" and settings.whatsapp_verify_token and hub_verify_token == settings.whatsapp_verify_token:
        logger.info("✅ WhatsApp webhook verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("WhatsApp webhook verification failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@app.post("/whatsapp/webhook")
@limiter.limit(settings.webhook_rate_limit)
async def whatsapp_webhook(request: Request):
    """Acknowledge inbound WhatsApp messages; each text message is processed on its own task."""
    try:
        payload = await request.json()
        webhook = WhatsAppWebhook(**payload)
    except (ValueError, TypeError, PydanticValidationError) as e:
        logger.warning(f"Ignoring malformed webhook payload: {e}")
        return {"status": "received"}

    messages = webhook.text_messages()
    for message in messages:
        _spawn(message)

    if messages:
        logger.info(f"WhatsApp webhook received {len(messages)} message(s)")
    return {"status": "received"}


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@app.post("/admin/broadcast")
async def broadcast_message(request: BroadcastRequest, _: bool = Depends(verify_api_key)) -> StandardResponse:
    """Send one message to up to `limit` users."""
    result = await services["dispatcher"].broadcast(request.message, request.limit)
    return StandardResponse(
        status=True,
        message=f"Broadcast sent to {result['sent']} of {result['total']} users",
        data=result
    )
