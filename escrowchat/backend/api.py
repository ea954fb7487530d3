"""FastAPI endpoints for chat sessions, billing operations and websocket sync."""

from __future__ import annotations

from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .abuse import AbuseGuard
from .collaborators import (
    InMemoryProfileService,
    InMemoryWalletService,
    LoggingAlertSink,
    RecordingModerationService,
    load_seed,
)
from .config import BackendSettings, load_settings
from .errors import BillingError
from .expiration import ExpirationScheduler, InactivityDeadlines
from .models import ContentType, MessageContent
from .service import BillingService
from .state import refund_to_state, session_to_state
from .store import create_store

logger = structlog.get_logger(__name__)

ERROR_STATUS: dict[str, int] = {
    "INVALID_PROFILE": 422,
    "SESSION_NOT_FOUND": 404,
    "NOT_PARTICIPANT": 403,
    "NOT_PAYER": 403,
    "DUPLICATE_DEPOSIT": 409,
    "DEPOSIT_NOT_ALLOWED": 409,
    "SESSION_CLOSED": 409,
    "INVALID_TRANSITION": 409,
    "INSUFFICIENT_FUNDS": 402,
    "INTEGRITY_VIOLATION": 422,
    "LEDGER_INTEGRITY": 500,
}


class CreateSessionRequest(BaseModel):
    participant_a: str = Field(min_length=1)
    participant_b: str = Field(min_length=1)
    initiator_id: str = Field(min_length=1)


class CreateSessionResponse(BaseModel):
    session_id: str
    state: dict[str, Any]


class SessionStateResponse(BaseModel):
    state: dict[str, Any]


class MessageEnvelope(BaseModel):
    sender_id: str = Field(min_length=1)
    content_type: ContentType = ContentType.TEXT
    text: str = Field(default="", max_length=10000)
    media_url: str | None = None


class MessageOutcomeResponse(BaseModel):
    allowed: bool
    token_cost: int
    reason: str | None = None
    message_id: str | None = None
    remaining_tokens: int | None = None


class DepositEnvelope(BaseModel):
    payer_id: str = Field(min_length=1)
    amount: int | None = Field(default=None, ge=1)


class DepositResponse(BaseModel):
    session_id: str
    deposit_amount: int
    platform_fee: int
    escrow_amount: int


class CloseEnvelope(BaseModel):
    requested_by: str = Field(min_length=1)


class CloseResponse(BaseModel):
    session_id: str
    state: str
    refund_amount: int


class MismatchEnvelope(BaseModel):
    reporter_id: str = Field(min_length=1)
    suspect_id: str = Field(min_length=1)


class MismatchResponse(BaseModel):
    session_id: str
    terminated: bool
    refund_amount: int


class RefundListResponse(BaseModel):
    refunds: list[dict[str, Any]]


class SessionWebSocketHub:
    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, session_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[session_id].add(websocket)

    def disconnect(self, session_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(session_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            self._connections.pop(session_id, None)

    async def send_state(self, websocket: WebSocket, state: dict[str, Any]) -> None:
        await websocket.send_json({"type": "session.state", "state": state})

    async def broadcast_state(self, session_id: str, state: dict[str, Any]) -> None:
        stale_connections: list[WebSocket] = []
        for websocket in list(self._connections.get(session_id, set())):
            try:
                await self.send_state(websocket, state)
            except RuntimeError:
                stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(session_id=session_id, websocket=websocket)


def _deadlines(settings: BackendSettings) -> InactivityDeadlines:
    return InactivityDeadlines(
        paid=timedelta(hours=settings.paid_inactivity_hours),
        total=timedelta(hours=settings.total_inactivity_hours),
    )


def _default_service(settings: BackendSettings) -> BillingService:
    if settings.seed_file:
        profiles, wallet = load_seed(settings.seed_file)
    else:
        logger.warning("no_seed_file", hint="set ESCROWCHAT_SEED_FILE to load profiles and balances")
        profiles, wallet = InMemoryProfileService(), InMemoryWalletService()
    return BillingService(
        store=create_store(settings.database_url),
        profiles=profiles,
        wallet=wallet,
        moderation=RecordingModerationService(),
        alerts=LoggingAlertSink(),
        abuse_guard=AbuseGuard(
            window_seconds=settings.abuse_window_seconds,
            max_repeats=settings.abuse_max_repeats,
        ),
        deadlines=_deadlines(settings),
    )


def create_app(
    service: BillingService | None = None,
    settings: BackendSettings | None = None,
    start_scheduler: bool = False,
) -> FastAPI:
    settings = settings or load_settings()
    billing = service if service is not None else _default_service(settings)
    scheduler = ExpirationScheduler(
        billing,
        deadlines=billing.deadlines,
        interval_seconds=settings.sweep_interval_seconds,
        lock_timeout_seconds=settings.lock_timeout_seconds,
        lock_retries=settings.lock_retries,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if start_scheduler:
            scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown()

    app = FastAPI(title="Escrow Chat Billing API", version="0.1.0", lifespan=lifespan)
    websocket_hub = SessionWebSocketHub()
    app.state.websocket_hub = websocket_hub
    app.state.scheduler = scheduler
    app.state.billing = billing

    @app.exception_handler(BillingError)
    async def billing_error_handler(_: Request, exc: BillingError) -> JSONResponse:
        status_code = ERROR_STATUS.get(exc.code, 400)
        if status_code >= 500:
            logger.error("request_failed", code=exc.code, session_id=exc.session_id)
        return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": exc.message})

    async def publish_state(session_id: str) -> dict[str, Any]:
        state = session_to_state(await run_in_threadpool(billing.get_session, session_id))
        await websocket_hub.broadcast_state(session_id=session_id, state=state)
        return state

    def get_service() -> BillingService:
        return billing

    @app.post("/api/sessions", response_model=CreateSessionResponse)
    async def create_session(
        payload: CreateSessionRequest,
        local_service: BillingService = Depends(get_service),
    ) -> CreateSessionResponse:
        session_id = await run_in_threadpool(
            local_service.initialize_session,
            payload.participant_a,
            payload.participant_b,
            payload.initiator_id,
        )
        state = session_to_state(await run_in_threadpool(local_service.get_session, session_id))
        return CreateSessionResponse(session_id=session_id, state=state)

    @app.get("/api/sessions/{session_id}", response_model=SessionStateResponse)
    def get_session(
        session_id: str,
        local_service: BillingService = Depends(get_service),
    ) -> SessionStateResponse:
        return SessionStateResponse(state=session_to_state(local_service.get_session(session_id)))

    @app.get("/api/sessions/{session_id}/refunds", response_model=RefundListResponse)
    def get_refunds(
        session_id: str,
        local_service: BillingService = Depends(get_service),
    ) -> RefundListResponse:
        return RefundListResponse(refunds=[refund_to_state(record) for record in local_service.list_refunds(session_id)])

    @app.post("/api/sessions/{session_id}/messages", response_model=MessageOutcomeResponse)
    async def post_message(
        session_id: str,
        payload: MessageEnvelope,
        local_service: BillingService = Depends(get_service),
    ) -> MessageOutcomeResponse:
        content = MessageContent(content_type=payload.content_type, text=payload.text, media_url=payload.media_url)
        outcome = await run_in_threadpool(local_service.send_message, session_id, payload.sender_id, content)
        await publish_state(session_id)
        return MessageOutcomeResponse(
            allowed=outcome.allowed,
            token_cost=outcome.token_cost,
            reason=outcome.reason,
            message_id=outcome.message_id,
            remaining_tokens=outcome.remaining_tokens,
        )

    @app.post("/api/sessions/{session_id}/deposits", response_model=DepositResponse)
    async def post_deposit(
        session_id: str,
        payload: DepositEnvelope,
        local_service: BillingService = Depends(get_service),
    ) -> DepositResponse:
        receipt = await run_in_threadpool(local_service.deposit, session_id, payload.payer_id, payload.amount)
        await publish_state(session_id)
        return DepositResponse(
            session_id=receipt.session_id,
            deposit_amount=receipt.deposit_amount,
            platform_fee=receipt.platform_fee,
            escrow_amount=receipt.escrow_amount,
        )

    @app.post("/api/sessions/{session_id}/close", response_model=CloseResponse)
    async def post_close(
        session_id: str,
        payload: CloseEnvelope,
        local_service: BillingService = Depends(get_service),
    ) -> CloseResponse:
        result = await run_in_threadpool(local_service.close_session, session_id, payload.requested_by)
        await publish_state(session_id)
        return CloseResponse(session_id=result.session_id, state=result.state.value, refund_amount=result.refund_amount)

    @app.post("/api/sessions/{session_id}/mismatch", response_model=MismatchResponse)
    async def post_mismatch(
        session_id: str,
        payload: MismatchEnvelope,
        local_service: BillingService = Depends(get_service),
    ) -> MismatchResponse:
        result = await run_in_threadpool(
            local_service.report_mismatch,
            session_id,
            payload.reporter_id,
            payload.suspect_id,
        )
        await publish_state(session_id)
        return MismatchResponse(
            session_id=result.session_id,
            terminated=result.terminated,
            refund_amount=result.refund_amount,
        )

    @app.websocket("/ws/sessions/{session_id}")
    async def session_ws(
        websocket: WebSocket,
        session_id: str,
        local_service: BillingService = Depends(get_service),
    ) -> None:
        try:
            session = await run_in_threadpool(local_service.get_session, session_id)
        except BillingError:
            await websocket.close(code=1008)
            return

        await websocket_hub.connect(session_id=session_id, websocket=websocket)
        await websocket_hub.send_state(websocket=websocket, state=session_to_state(session))

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            websocket_hub.disconnect(session_id=session_id, websocket=websocket)

    return app


app = create_app()
