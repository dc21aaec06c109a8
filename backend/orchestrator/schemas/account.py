"""Account and authentication schemas"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

from orchestrator.models.group import Role

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


class AccountResponse(BaseModel):
    """Account as seen outside the credential store; never carries secrets"""
    id: str
    username: str
    is_system_admin: bool
    totp_enabled: bool = False
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class GroupMembershipInfo(BaseModel):
    """Group membership as shown on the account"""
    group_id: str
    group_name: str
    role: Role
    totp_required: bool


class AccountDetailResponse(AccountResponse):
    groups: List[GroupMembershipInfo] = []


class LoginRequest(BaseModel):
    """User login schema"""
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1)


class TotpLoginRequest(LoginRequest):
    """Second login step with a TOTP or backup code"""
    totp_code: str = Field(..., min_length=6, max_length=16)


class AccountCreate(BaseModel):
    """Account creation schema"""
    username: str = Field(..., min_length=3, max_length=64, pattern=r'^[a-zA-Z0-9_.-]+$')
    password: str = Field(..., min_length=8)
    group_id: Optional[str] = None
    role: Optional[Role] = None

    @field_validator('password')
    @classmethod
    def password_fits_bcrypt(cls, v):
        return _check_password_bytes(v)


class SetupRequest(BaseModel):
    """First-run system admin creation"""
    username: str = Field(..., min_length=3, max_length=64, pattern=r'^[a-zA-Z0-9_.-]+$')
    password: str = Field(..., min_length=8)

    @field_validator('password')
    @classmethod
    def password_fits_bcrypt(cls, v):
        return _check_password_bytes(v)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)

    @field_validator('new_password')
    @classmethod
    def password_fits_bcrypt(cls, v):
        return _check_password_bytes(v)


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class TokenResponse(BaseModel):
    """Issued token pair"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Optional[AccountDetailResponse] = None
    totp_setup_required: bool = False


class LoginChallengeResponse(BaseModel):
    """Password accepted, second factor still required"""
    totp_required: bool = True
    message: str = "TOTP verification required"


class MeResponse(AccountDetailResponse):
    totp_required: bool = False
    highest_role: Optional[Role] = None
