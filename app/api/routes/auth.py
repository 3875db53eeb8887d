from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_current_user, get_sinks, get_store, refresh_header
from app.api.schemas.auth import (
    LoginRequest,
    PatientSignupRequest,
    ProviderSignupRequest,
    RefreshRequest,
    TokenPair,
)
from app.core.persistence import PersistenceProvider
from app.models.user import PatientProfile, ProviderProfile, User, UserPublic, UserUpdate
from app.services import auth_service
from app.services.notifications import NotificationSink

router = APIRouter(prefix="/auth", tags=["auth"])


def _to_token_pair(tokens: auth_service.TokenPair) -> TokenPair:
    access, refresh, expires_in = tokens
    return TokenPair(access_token=access, refresh_token=refresh, expires_in=expires_in)


@router.post("/signup/patient", response_model=TokenPair, status_code=status.HTTP_201_CREATED)
async def signup_patient(
    body: PatientSignupRequest,
    store: PersistenceProvider = Depends(get_store),
    sinks: tuple[NotificationSink, ...] = Depends(get_sinks),
) -> TokenPair:
    profile = PatientProfile(display_name=body.name, age=body.age, gender=body.gender)
    _, tokens = await auth_service.register(store, body.email, body.password, profile, sinks=sinks)
    return _to_token_pair(tokens)


@router.post("/signup/provider", response_model=TokenPair, status_code=status.HTTP_201_CREATED)
async def signup_provider(
    body: ProviderSignupRequest,
    store: PersistenceProvider = Depends(get_store),
    sinks: tuple[NotificationSink, ...] = Depends(get_sinks),
) -> TokenPair:
    profile = ProviderProfile(display_name=body.name, specialty=body.specialty)
    _, tokens = await auth_service.register(store, body.email, body.password, profile, sinks=sinks)
    return _to_token_pair(tokens)


@router.post("/login", response_model=TokenPair)
async def login(
    body: LoginRequest,
    store: PersistenceProvider = Depends(get_store),
    sinks: tuple[NotificationSink, ...] = Depends(get_sinks),
) -> TokenPair:
    _, tokens = await auth_service.authenticate(store, body.email, body.password, sinks=sinks)
    return _to_token_pair(tokens)


@router.post("/refresh", response_model=TokenPair)
async def refresh(
    store: PersistenceProvider = Depends(get_store),
    x_refresh_token: str | None = Depends(refresh_header),
    body: RefreshRequest | None = None,
) -> TokenPair:
    token = x_refresh_token or (body.refresh_token if body else None)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token required (header X-Refresh-Token or body refresh_token)",
        )
    _, tokens = await auth_service.refresh(store, token)
    return _to_token_pair(tokens)


@router.post("/logout")
async def logout(
    store: PersistenceProvider = Depends(get_store),
    sinks: tuple[NotificationSink, ...] = Depends(get_sinks),
    x_refresh_token: str | None = Depends(refresh_header),
    body: RefreshRequest | None = None,
) -> dict:
    token = x_refresh_token or (body.refresh_token if body else None)
    if token:
        await auth_service.logout(store, token, sinks=sinks)
    return {"message": "Logged out"}


@router.get("/me", response_model=UserPublic)
async def me(current_user: User = Depends(get_current_user)) -> UserPublic:
    return auth_service.user_to_public(current_user)


@router.patch("/me", response_model=UserPublic)
async def update_me(
    body: UserUpdate,
    store: PersistenceProvider = Depends(get_store),
    current_user: User = Depends(get_current_user),
) -> UserPublic:
    user = await auth_service.update_profile(store, current_user.id, body)
    return auth_service.user_to_public(user)
