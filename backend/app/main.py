import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from app.auth.security import verify_socket_credential
from app.core.config import settings
from app.core.database import init_db
from app.core.limiter import limiter, _rate_limit_exceeded_handler
from app.core.logging import setup_logging
from app.notifications.audience import AudienceResolver
from app.notifications.dispatcher import PushDispatcher
from app.notifications.exceptions import InvalidTokenFormat, ResolutionFailure, UserNotFound
from app.notifications.gateway import build_push_gateway
from app.notifications.hub import ConnectionHub
from app.notifications.orchestrator import DeliveryOrchestrator
from app.notifications.registry import EndpointRegistry
from app.notifications.router import router as notifications_router
from app.notifications.stores import SqlNotificationStore, SqlUserStore
from app.notifications.tasks import schedule_receipt_check

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="School Notification Service", version="0.1.0")

# Set up SlowAPI limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(InvalidTokenFormat)
async def invalid_token_format_handler(request: Request, exc: InvalidTokenFormat):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "Invalid Expo push token format"})


@app.exception_handler(UserNotFound)
async def user_not_found_handler(request: Request, exc: UserNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ResolutionFailure)
async def resolution_failure_handler(request: Request, exc: ResolutionFailure):
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


def build_services(target: FastAPI) -> None:
    """Wire the delivery core onto ``app.state``."""
    gateway = build_push_gateway()
    user_store = SqlUserStore()

    dispatcher = PushDispatcher(gateway)
    resolver = AudienceResolver(user_store)
    verifier = verify_socket_credential if settings.WEBSOCKET_REQUIRE_SIGNED_CREDENTIAL else None
    hub = ConnectionHub(credential_verifier=verifier)

    target.state.gateway = gateway
    target.state.dispatcher = dispatcher
    target.state.resolver = resolver
    target.state.hub = hub
    target.state.registry = EndpointRegistry(user_store, dispatcher.is_valid_token)
    target.state.orchestrator = DeliveryOrchestrator(
        resolver,
        dispatcher,
        hub,
        notification_store=SqlNotificationStore(),
        receipt_scheduler=schedule_receipt_check if settings.PUSH_RECEIPT_CHECK_ENABLED else None,
    )


@app.on_event("startup")
async def startup():
    # Initialize database
    init_db()
    build_services(app)
    logger.info(f"Notification service started (push enabled: {settings.PUSH_ENABLED})")


@app.on_event("shutdown")
async def shutdown():
    await app.state.hub.close()
    try:
        await app.state.gateway.aclose()
    except Exception as e:
        logger.error(f"Error closing push gateway: {e}")


app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # React frontend
        "http://localhost:8080",  # Alternative frontend port
        "http://localhost:19006",  # Expo web
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8080",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    # WebSocket specific headers
    expose_headers=["*"],
)


app.include_router(notifications_router, prefix="/api/v1/notifications", tags=["notifications"])
