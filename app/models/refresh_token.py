from datetime import UTC, datetime
from uuid import uuid4

from sqlmodel import Field, SQLModel


def _naive_utc(value: datetime) -> datetime:
    """TIMESTAMP WITHOUT TIME ZONE: store as naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.replace(tzinfo=None)


class RefreshToken(SQLModel, table=True):
    """One row per issued refresh token; rotation revokes the old row."""

    __tablename__ = "refresh_tokens"
    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    jti: str = Field(unique=True, index=True)
    expires_at: datetime = Field(index=True)
    revoked: bool = False

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and _naive_utc(self.expires_at) > _naive_utc(now)
