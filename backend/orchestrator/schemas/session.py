"""Session and two-factor schemas"""

from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field


class SessionInfo(BaseModel):
    """One live refresh-token record, as shown to its owner"""
    id: str
    family_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    is_current: bool = False


class CurrentSessionRequest(BaseModel):
    refresh_token: Optional[str] = None


class RevokeOthersRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ActiveSessionCount(BaseModel):
    active_session_count: int


class TotpSetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    qr_code: str
    backup_codes: List[str]


class TotpVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6, pattern=r'^\d{6}$')


class TotpDisableRequest(BaseModel):
    password: str = Field(..., min_length=1)


class TotpStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
