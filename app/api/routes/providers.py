from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_provider, get_store
from app.api.schemas.appointment import ProviderSummary
from app.core.persistence import PersistenceProvider
from app.models.user import SPECIALTIES, ProviderPublic, User
from app.services import appointment_service, auth_service

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=list[ProviderPublic])
async def list_providers(
    specialty: str | None = Query(None),
    store: PersistenceProvider = Depends(get_store),
) -> list[ProviderPublic]:
    return await auth_service.list_providers(store, specialty=specialty)


@router.get("/specialties", response_model=list[str])
async def list_specialties() -> list[str]:
    return list(SPECIALTIES)


@router.get("/me/summary", response_model=ProviderSummary)
async def my_summary(
    store: PersistenceProvider = Depends(get_store),
    current_user: User = Depends(get_current_provider),
) -> ProviderSummary:
    counters = await appointment_service.provider_summary(store, current_user.id)
    return ProviderSummary(**counters)
