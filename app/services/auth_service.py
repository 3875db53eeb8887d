import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from app.core.config import settings
from app.core.errors import InvalidCredential, UserNotFound, ValidationError, WeakCredential
from app.core.persistence import PersistenceProvider
from app.core.security import (
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_refresh_token,
    hash_password,
    verify_password,
)
from app.models.refresh_token import RefreshToken
from app.models.user import (
    Identity,
    PatientProfile,
    ProviderProfile,
    ProviderPublic,
    Role,
    User,
    UserPublic,
    UserUpdate,
)
from app.services.notifications import ChangeEvent, EventKind, NotificationSink, dispatch

logger = logging.getLogger(__name__)

TokenPair = tuple[str, str, int]


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _utc_naive() -> datetime:
    """Naive UTC datetime for DB columns that are TIMESTAMP WITHOUT TIME ZONE."""
    return datetime.now(UTC).replace(tzinfo=None)


def user_to_public(user: User) -> UserPublic:
    return UserPublic(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        role=user.role,
        age=user.age,
        gender=user.gender,
        specialty=user.specialty,
    )


def make_token_pair(user: User) -> TokenPair:
    access = create_access_token(user.id, user.role)
    refresh = create_refresh_token(user.id)
    expires_in = settings.access_token_expire_minutes * 60
    return access, refresh, expires_in


async def store_refresh_token(store: PersistenceProvider, user_id: str, refresh_token: str) -> None:
    user_id_str, jti = decode_refresh_token(refresh_token)
    if not user_id_str or not jti:
        return
    expires_at = _utc_naive() + timedelta(days=settings.refresh_token_expire_days)
    await store.insert_refresh_token(RefreshToken(user_id=user_id, jti=jti, expires_at=expires_at))


async def _issue_tokens(store: PersistenceProvider, user: User) -> TokenPair:
    access, refresh, expires_in = make_token_pair(user)
    await store_refresh_token(store, user.id, refresh)
    return access, refresh, expires_in


async def register(
    store: PersistenceProvider,
    email: str,
    password: str,
    profile: PatientProfile | ProviderProfile,
    *,
    sinks: Iterable[NotificationSink] = (),
) -> tuple[User, TokenPair]:
    if len(password) < settings.min_password_length:
        raise WeakCredential(f"Password should be at least {settings.min_password_length} characters")
    email = _normalize_email(email)
    if "@" not in email:
        raise ValidationError("Invalid email address")
    if isinstance(profile, PatientProfile):
        user = User(
            email=email,
            display_name=profile.display_name.strip(),
            role=Role.PATIENT.value,
            age=profile.age,
            gender=profile.gender.value,
            hashed_password=hash_password(password),
        )
    else:
        specialty = profile.specialty.strip()
        if not specialty:
            raise ValidationError("Specialty must not be empty")
        user = User(
            email=email,
            display_name=profile.display_name.strip(),
            role=Role.PROVIDER.value,
            specialty=specialty,
            hashed_password=hash_password(password),
        )
    # Insert enforces email uniqueness (EmailTaken)
    user = await store.insert_user(user)
    logger.info("Registered %s %s", user.role, user.id)
    tokens = await _issue_tokens(store, user)
    dispatch(sinks, ChangeEvent.for_identity(EventKind.USER_REGISTERED, user.identity))
    return user, tokens


async def authenticate(
    store: PersistenceProvider,
    email: str,
    password: str,
    *,
    sinks: Iterable[NotificationSink] = (),
) -> tuple[User, TokenPair]:
    user = await store.get_user_by_email(_normalize_email(email))
    if not user or not verify_password(password, user.hashed_password):
        raise InvalidCredential()
    tokens = await _issue_tokens(store, user)
    dispatch(sinks, ChangeEvent.for_identity(EventKind.USER_SIGNED_IN, user.identity))
    return user, tokens


async def refresh(store: PersistenceProvider, refresh_token: str) -> tuple[User, TokenPair]:
    """Rotate a refresh token: the old one is revoked, a new pair is issued."""
    user_id, jti = decode_refresh_token(refresh_token)
    if not user_id or not jti:
        raise InvalidCredential("Invalid or expired refresh token")
    row = await store.get_refresh_token(jti)
    if row is None or not row.is_usable(_utc_naive()):
        raise InvalidCredential("Invalid or expired refresh token")
    user = await store.get_user(user_id)
    if user is None:
        raise InvalidCredential("Invalid or expired refresh token")
    # Conditional revoke: two concurrent refreshes with one token can not both succeed
    if not await store.revoke_refresh_token(jti):
        raise InvalidCredential("Invalid or expired refresh token")
    return user, await _issue_tokens(store, user)


async def logout(
    store: PersistenceProvider,
    refresh_token: str,
    *,
    sinks: Iterable[NotificationSink] = (),
) -> None:
    user_id, jti = decode_refresh_token(refresh_token)
    if not user_id or not jti:
        return
    if await store.revoke_refresh_token(jti):
        user = await store.get_user(user_id)
        if user is not None:
            dispatch(sinks, ChangeEvent.for_identity(EventKind.USER_SIGNED_OUT, user.identity))


async def resolve_user(store: PersistenceProvider, access_token: str) -> User | None:
    user_id = decode_access_token(access_token)
    if not user_id:
        return None
    return await store.get_user(user_id)


async def resolve_identity(store: PersistenceProvider, access_token: str) -> Identity | None:
    """The current identity behind an access token, or None."""
    user = await resolve_user(store, access_token)
    return user.identity if user else None


async def update_profile(store: PersistenceProvider, user_id: str, changes: UserUpdate) -> User:
    user = await store.get_user(user_id)
    if user is None:
        raise UserNotFound()
    data = changes.model_dump(exclude_unset=True, exclude_none=True)
    if "specialty" in data and user.role != Role.PROVIDER:
        raise ValidationError("Only providers have a specialty")
    if "display_name" in data:
        user.display_name = data["display_name"].strip()
    if "specialty" in data:
        user.specialty = data["specialty"].strip()
    user.updated_at = _utc_naive()
    return await store.update_user(user)


async def list_providers(store: PersistenceProvider, specialty: str | None = None) -> list[ProviderPublic]:
    providers = await store.list_users(Role.PROVIDER.value, specialty=specialty)
    return [ProviderPublic(id=p.id, display_name=p.display_name, specialty=p.specialty) for p in providers]
