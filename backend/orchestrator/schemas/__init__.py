"""Pydantic schemas for API validation"""

from orchestrator.schemas.account import (
    AccountCreate,
    AccountResponse,
    AccountDetailResponse,
    ChangePasswordRequest,
    GroupMembershipInfo,
    LoginChallengeResponse,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    RefreshTokenRequest,
    SetupRequest,
    TokenResponse,
    TotpLoginRequest,
)
from orchestrator.schemas.group import (
    AddMemberRequest,
    GroupCreate,
    GroupDetailResponse,
    GroupMemberResponse,
    GroupResponse,
    GroupUpdate,
    UpdateMemberRequest,
)
from orchestrator.schemas.session import (
    ActiveSessionCount,
    BackupCodesResponse,
    CurrentSessionRequest,
    RevokeOthersRequest,
    SessionInfo,
    TotpDisableRequest,
    TotpSetupResponse,
    TotpStatusResponse,
    TotpVerifyRequest,
)
from orchestrator.schemas.response import APIResponse, ErrorResponse, RevokedCountResponse
from orchestrator.schemas.audit import AuditEventResponse

__all__ = [
    "AccountCreate", "AccountResponse", "AccountDetailResponse", "ChangePasswordRequest",
    "GroupMembershipInfo", "LoginChallengeResponse", "LoginRequest", "LogoutRequest", "MeResponse",
    "RefreshTokenRequest", "SetupRequest", "TokenResponse", "TotpLoginRequest",
    "AddMemberRequest", "GroupCreate", "GroupDetailResponse", "GroupMemberResponse", "GroupResponse",
    "GroupUpdate", "UpdateMemberRequest",
    "ActiveSessionCount", "BackupCodesResponse", "CurrentSessionRequest", "RevokeOthersRequest",
    "SessionInfo", "TotpDisableRequest", "TotpSetupResponse", "TotpStatusResponse", "TotpVerifyRequest",
    "APIResponse", "ErrorResponse", "RevokedCountResponse", "AuditEventResponse",
]
