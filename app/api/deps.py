from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.persistence import PersistenceProvider
from app.models.user import Role, User
from app.services import auth_service
from app.services.notifications import NotificationSink

security = HTTPBearer(auto_error=False)


def get_store(request: Request) -> PersistenceProvider:
    return request.app.state.store


def get_sinks(request: Request) -> tuple[NotificationSink, ...]:
    return request.app.state.sinks


def refresh_header(x_refresh_token: str | None = Header(default=None, alias="X-Refresh-Token")) -> str | None:
    """Extract X-Refresh-Token header for logout/refresh endpoints."""
    return x_refresh_token


async def get_current_user(
    store: PersistenceProvider = Depends(get_store),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> User:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = await auth_service.resolve_user(store, credentials.credentials)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_current_provider(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != Role.PROVIDER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Providers only")
    return current_user


async def get_current_patient(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != Role.PATIENT:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Patients only")
    return current_user
