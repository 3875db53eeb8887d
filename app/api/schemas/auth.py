from pydantic import BaseModel, EmailStr, Field

from app.models.user import Gender


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class PatientSignupRequest(BaseModel):
    email: EmailStr
    password: str
    name: str = Field(min_length=2)
    age: int = Field(ge=1, le=120)
    gender: Gender


class ProviderSignupRequest(BaseModel):
    email: EmailStr
    password: str
    name: str = Field(min_length=2)
    specialty: str = Field(min_length=1)


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class RefreshRequest(BaseModel):
    refresh_token: str
