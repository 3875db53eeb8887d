from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_current_provider, get_sinks, get_store
from app.core.persistence import PersistenceProvider
from app.models.slot import OpenSlotPublic, SlotCreate, SlotPublic
from app.models.user import User
from app.services import slot_service
from app.services.notifications import NotificationSink

router = APIRouter(prefix="/slots", tags=["slots"])


@router.post("", response_model=SlotPublic, status_code=status.HTTP_201_CREATED)
async def publish_slot(
    body: SlotCreate,
    store: PersistenceProvider = Depends(get_store),
    sinks: tuple[NotificationSink, ...] = Depends(get_sinks),
    current_user: User = Depends(get_current_provider),
) -> SlotPublic:
    slot = await slot_service.publish_slot(store, current_user.id, body.date, body.time, sinks=sinks)
    return SlotPublic.model_validate(slot.model_dump())


@router.delete("/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def withdraw_slot(
    slot_id: str,
    store: PersistenceProvider = Depends(get_store),
    sinks: tuple[NotificationSink, ...] = Depends(get_sinks),
    current_user: User = Depends(get_current_provider),
) -> None:
    await slot_service.withdraw_slot(store, slot_id, current_user.id, sinks=sinks)


@router.get("/open", response_model=list[OpenSlotPublic])
async def open_slots(
    provider_id: str | None = Query(None),
    store: PersistenceProvider = Depends(get_store),
) -> list[OpenSlotPublic]:
    """Open slots ordered by date and time, with provider name and specialty."""
    return await slot_service.list_open_slots_with_providers(store, provider_id)


@router.get("/mine", response_model=list[SlotPublic])
async def my_slots(
    store: PersistenceProvider = Depends(get_store),
    current_user: User = Depends(get_current_provider),
) -> list[SlotPublic]:
    slots = await slot_service.list_provider_slots(store, current_user.id)
    return [SlotPublic.model_validate(s.model_dump()) for s in slots]
