import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from app.api.deps import get_current_patient, get_current_user, get_sinks, get_store
from app.api.schemas.appointment import BookAppointmentRequest, StatusUpdateRequest
from app.core.persistence import PersistenceProvider
from app.models.appointment import Appointment, AppointmentPublic, StatusChangePublic
from app.models.user import User
from app.services import appointment_service, auth_service, booking_service
from app.services.notifications import NotificationSink, Subscription, for_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/appointments", tags=["appointments"])


def _to_public(a: Appointment) -> AppointmentPublic:
    return AppointmentPublic.model_validate(a.model_dump())


@router.websocket("/stream")
async def stream_changes(websocket: WebSocket, token: str = Query(...)) -> None:
    """Live feed of changes to the caller's appointments and slots."""
    store: PersistenceProvider = websocket.app.state.store
    identity = await auth_service.resolve_identity(store, token)
    if identity is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    # Subscribe before accepting so nothing published after the handshake is missed
    with websocket.app.state.feed.subscribe(for_user(identity.user_id)) as subscription:
        await websocket.accept()
        sender = asyncio.create_task(_forward(websocket, subscription))
        try:
            # Client messages are ignored; we only wait for the disconnect
            while (await websocket.receive())["type"] != "websocket.disconnect":
                pass
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await sender
        logger.debug("Stream closed by %s", identity.user_id)


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.model_dump(mode="json"))


@router.post("", response_model=AppointmentPublic, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: BookAppointmentRequest,
    store: PersistenceProvider = Depends(get_store),
    sinks: tuple[NotificationSink, ...] = Depends(get_sinks),
    current_user: User = Depends(get_current_patient),
) -> AppointmentPublic:
    appointment = await booking_service.book(
        store,
        body.slot_id,
        current_user.id,
        idempotency_key=body.idempotency_key,
        sinks=sinks,
    )
    return _to_public(appointment)


@router.get("", response_model=list[AppointmentPublic])
async def list_my_appointments(
    store: PersistenceProvider = Depends(get_store),
    current_user: User = Depends(get_current_user),
) -> list[AppointmentPublic]:
    """Patients see their bookings, providers their requests; newest date first."""
    appointments = await appointment_service.list_for_identity(store, current_user.identity)
    return [_to_public(a) for a in appointments]


@router.get("/{appointment_id}", response_model=AppointmentPublic)
async def get_appointment(
    appointment_id: str,
    store: PersistenceProvider = Depends(get_store),
    current_user: User = Depends(get_current_user),
) -> AppointmentPublic:
    appointment = await appointment_service.get_for_participant(store, appointment_id, current_user.identity)
    return _to_public(appointment)


@router.patch("/{appointment_id}/status", response_model=AppointmentPublic)
async def update_status(
    appointment_id: str,
    body: StatusUpdateRequest,
    store: PersistenceProvider = Depends(get_store),
    sinks: tuple[NotificationSink, ...] = Depends(get_sinks),
    current_user: User = Depends(get_current_user),
) -> AppointmentPublic:
    appointment = await booking_service.set_status(
        store, appointment_id, body.status, current_user.identity, sinks=sinks
    )
    return _to_public(appointment)


@router.get("/{appointment_id}/history", response_model=list[StatusChangePublic])
async def appointment_history(
    appointment_id: str,
    store: PersistenceProvider = Depends(get_store),
    current_user: User = Depends(get_current_user),
) -> list[StatusChangePublic]:
    await appointment_service.get_for_participant(store, appointment_id, current_user.identity)
    changes = await appointment_service.status_history(store, appointment_id)
    return [StatusChangePublic.model_validate(c.model_dump()) for c in changes]
