"""Authentication routes"""

import logging
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, status, Request

from orchestrator.config import settings
from orchestrator.core.exceptions import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitExceededError,
    TokenInvalidError,
    ValidationError,
)
from orchestrator.core.metrics import LOGIN_ATTEMPTS
from orchestrator.schemas.account import (
    AccountDetailResponse,
    AccountResponse,
    ChangePasswordRequest,
    LoginChallengeResponse,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    RefreshTokenRequest,
    SetupRequest,
    TokenResponse,
    TotpLoginRequest,
)
from orchestrator.schemas.response import APIResponse, RevokedCountResponse
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
from orchestrator.services.audit_service import AuditService
from orchestrator.services.credential_store import CredentialStore
from orchestrator.services.rate_limiter import login_throttle
from orchestrator.services.rbac_service import GroupService
from orchestrator.services.session_registry import SessionRegistry
from orchestrator.services.token_service import TokenPair, TokenService
from orchestrator.services.totp_service import TotpService
from orchestrator.api.deps import (
    CurrentUser,
    client_ip,
    get_audit_service,
    get_credential_store,
    get_current_user,
    get_group_service,
    get_session_registry,
    get_token_service,
    get_totp_service,
    session_metadata,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _throttle_login(request: Request, username: str) -> None:
    ip = client_ip(request)
    per_min_key = login_throttle.key("login:min", ip, username)
    per_hour_key = login_throttle.key("login:hour", ip, username)
    if not login_throttle.hit(per_min_key, settings.LOGIN_RATE_LIMIT_PER_MINUTE, 60):
        raise RateLimitExceededError("Too many login attempts. Please wait a minute.")
    if not login_throttle.hit(per_hour_key, settings.LOGIN_RATE_LIMIT_PER_HOUR, 3600):
        raise RateLimitExceededError("Too many login attempts. Please try again later.")


def _detail(account: AccountResponse, groups: GroupService) -> AccountDetailResponse:
    return AccountDetailResponse(**account.model_dump(), groups=groups.get_user_groups(account.id))


def _token_response(
    pair: TokenPair,
    account: AccountResponse,
    groups: GroupService,
    totp_setup_required: bool = False,
) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",
        expires_in=pair.expires_in,
        user=_detail(account, groups),
        totp_setup_required=totp_setup_required,
    )


def _failed_login(audit: AuditService, request: Request, username: str, reason: str) -> None:
    LOGIN_ATTEMPTS.labels(outcome="failure").inc()
    audit.log_event(
        account_id=None,
        action="login_failed",
        target_type="auth",
        ip_address=client_ip(request),
        metadata={"username": username, "reason": reason},
    )


@router.post("/setup", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def initial_setup(
    body: SetupRequest,
    request: Request,
    credentials: CredentialStore = Depends(get_credential_store),
    audit: AuditService = Depends(get_audit_service),
):
    """
    Create the first system admin

    Only allowed while no account exists.
    """
    if credentials.count_accounts() > 0:
        raise ConflictError("Setup already completed", code="SETUP_COMPLETE")

    account_id = credentials.create_account(body.username, body.password, elevated=True)
    audit.log_event(
        account_id=account_id,
        action="setup_complete",
        target_type="user",
        target_id=account_id,
        ip_address=client_ip(request),
    )
    return credentials.get_account(account_id)


@router.post(
    "/login",
    response_model=Union[TokenResponse, LoginChallengeResponse],
    status_code=status.HTTP_200_OK,
)
def login(
    body: LoginRequest,
    request: Request,
    credentials: CredentialStore = Depends(get_credential_store),
    groups: GroupService = Depends(get_group_service),
    tokens: TokenService = Depends(get_token_service),
    audit: AuditService = Depends(get_audit_service),
):
    """
    Login endpoint - check the password and issue a token pair

    Accounts with TOTP enabled get a challenge instead of tokens and must
    finish through /login/totp.

    Returns:
        Token pair and account info, or a TOTP challenge
    """
    _throttle_login(request, body.username)

    account = credentials.validate_credentials(body.username, body.password)
    if account is None:
        _failed_login(audit, request, body.username, "invalid_credentials")
        raise InvalidCredentialsError()

    if account.totp_enabled:
        LOGIN_ATTEMPTS.labels(outcome="totp_challenge").inc()
        return LoginChallengeResponse()

    # Group demands 2FA but the account has not set it up yet
    setup_required = groups.user_requires_totp(account.id)

    pair = tokens.issue_tokens(account, session_metadata(request))
    LOGIN_ATTEMPTS.labels(outcome="success").inc()
    audit.log_event(
        account_id=account.id,
        action="login",
        target_type="user",
        target_id=account.id,
        ip_address=client_ip(request),
        metadata={"session_id": pair.session_id},
    )
    login_throttle.reset(login_throttle.key("login:min", client_ip(request), body.username))
    return _token_response(pair, account, groups, totp_setup_required=setup_required)


@router.post("/login/totp", response_model=TokenResponse)
def login_totp(
    body: TotpLoginRequest,
    request: Request,
    credentials: CredentialStore = Depends(get_credential_store),
    groups: GroupService = Depends(get_group_service),
    tokens: TokenService = Depends(get_token_service),
    totp: TotpService = Depends(get_totp_service),
    audit: AuditService = Depends(get_audit_service),
):
    """Second login step: password again plus a TOTP or backup code"""
    _throttle_login(request, body.username)

    account = credentials.validate_credentials(body.username, body.password)
    if account is None:
        _failed_login(audit, request, body.username, "invalid_credentials")
        raise InvalidCredentialsError()

    if not totp.is_totp_enabled(account.id):
        _failed_login(audit, request, body.username, "totp_not_enabled")
        raise ValidationError("Two-factor authentication is not enabled", code="TOTP_NOT_ENABLED")

    if not totp.verify_totp_code(account.id, body.totp_code, ip_address=client_ip(request)):
        _failed_login(audit, request, body.username, "invalid_totp")
        raise AuthenticationError("Invalid TOTP code", code="INVALID_TOTP")

    pair = tokens.issue_tokens(account, session_metadata(request))
    LOGIN_ATTEMPTS.labels(outcome="success").inc()
    audit.log_event(
        account_id=account.id,
        action="login",
        target_type="user",
        target_id=account.id,
        ip_address=client_ip(request),
        metadata={"session_id": pair.session_id, "totp": True},
    )
    return _token_response(pair, account, groups)


@router.post("/refresh", response_model=TokenResponse)
def refresh_token(
    body: RefreshTokenRequest,
    request: Request,
    credentials: CredentialStore = Depends(get_credential_store),
    groups: GroupService = Depends(get_group_service),
    tokens: TokenService = Depends(get_token_service),
):
    """
    Exchange a refresh token for a new pair

    The presented token is consumed; replaying it later revokes the session.
    """
    key = login_throttle.key("refresh:min", client_ip(request))
    if not login_throttle.hit(key, settings.REFRESH_RATE_LIMIT_PER_MINUTE, 60):
        raise RateLimitExceededError("Too many refresh attempts. Slow down.")

    pair = tokens.rotate_refresh_token(body.refresh_token, session_metadata(request))
    if pair is None:
        raise TokenInvalidError("Invalid or expired refresh token")

    payload = tokens.verify_access_token(pair.access_token)
    if payload is None:
        raise RuntimeError("Freshly issued access token failed verification")
    account = credentials.get_account(payload["sub"])
    if account is None:
        raise TokenInvalidError("Invalid or expired refresh token")
    return _token_response(pair, account, groups)


@router.post("/logout", response_model=APIResponse)
def logout(
    body: Optional[LogoutRequest] = None,
    tokens: TokenService = Depends(get_token_service),
):
    """
    Logout endpoint - revoke the presented refresh token

    The access token stays valid until it expires.
    """
    if body and body.refresh_token:
        tokens.revoke_refresh_token(body.refresh_token)
    return APIResponse(message="Logged out successfully")


@router.get("/me", response_model=MeResponse)
def get_current_user_info(
    current_user: CurrentUser = Depends(get_current_user),
    credentials: CredentialStore = Depends(get_credential_store),
    groups: GroupService = Depends(get_group_service),
):
    """Current account with group memberships and derived 2FA policy"""
    account = credentials.get_account(current_user.account_id)
    if account is None:
        raise NotFoundError("User", code="USER_NOT_FOUND")

    access = groups.resolve_access(account.id)
    return MeResponse(
        **account.model_dump(),
        groups=groups.get_user_groups(account.id),
        totp_required=access.requires_totp if access else False,
        highest_role=access.highest_role if access else None,
    )


@router.post("/change-password", response_model=APIResponse)
def change_password(
    body: ChangePasswordRequest,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    credentials: CredentialStore = Depends(get_credential_store),
    audit: AuditService = Depends(get_audit_service),
):
    """Change password; every session of the account is signed out"""
    if not credentials.change_password(current_user.account_id, body.old_password, body.new_password):
        raise AuthenticationError("Current password is incorrect", code="INVALID_PASSWORD")

    audit.log_event(
        account_id=current_user.account_id,
        action="password_changed",
        target_type="user",
        target_id=current_user.account_id,
        ip_address=client_ip(request),
    )
    return APIResponse(message="Password changed. Please log in again.")


# ---- Sessions ----

@router.get("/sessions", response_model=List[SessionInfo])
def list_sessions(
    current_user: CurrentUser = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return registry.list_sessions(current_user.account_id)


@router.post("/sessions/current", response_model=List[SessionInfo])
def list_sessions_with_current(
    body: CurrentSessionRequest,
    current_user: CurrentUser = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Same as GET /sessions, flagging the session the given refresh token belongs to"""
    current_hash = registry.token_hash(body.refresh_token) if body.refresh_token else None
    return registry.list_sessions(current_user.account_id, current_hash)


@router.get("/sessions/active", response_model=ActiveSessionCount)
def active_session_count(
    current_user: CurrentUser = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_session_registry),
):
    return ActiveSessionCount(active_session_count=registry.count_active_sessions(current_user.account_id))


@router.post("/sessions/revoke-others", response_model=RevokedCountResponse)
def revoke_other_sessions(
    body: RevokeOthersRequest,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_session_registry),
    audit: AuditService = Depends(get_audit_service),
):
    kept = registry.session_id_for_token(body.refresh_token)
    revoked = registry.revoke_other_sessions(current_user.account_id, registry.token_hash(body.refresh_token))
    audit.log_event(
        account_id=current_user.account_id,
        action="sessions_revoked",
        target_type="user",
        target_id=current_user.account_id,
        ip_address=client_ip(request),
        metadata={"scope": "others", "count": revoked, "kept_session_id": kept},
    )
    return RevokedCountResponse(message=f"Revoked {revoked} other sessions", revoked_count=revoked)


@router.post("/sessions/revoke-all", response_model=RevokedCountResponse)
def revoke_all_sessions(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_session_registry),
    audit: AuditService = Depends(get_audit_service),
):
    revoked = registry.revoke_all_sessions(current_user.account_id)
    audit.log_event(
        account_id=current_user.account_id,
        action="sessions_revoked",
        target_type="user",
        target_id=current_user.account_id,
        ip_address=client_ip(request),
        metadata={"scope": "all", "count": revoked},
    )
    return RevokedCountResponse(message=f"Revoked {revoked} sessions", revoked_count=revoked)


@router.delete("/sessions/{session_id}", response_model=APIResponse)
def revoke_session(
    session_id: str,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_session_registry),
    audit: AuditService = Depends(get_audit_service),
):
    if not registry.revoke_session(current_user.account_id, session_id):
        raise NotFoundError("Session", code="SESSION_NOT_FOUND")

    audit.log_event(
        account_id=current_user.account_id,
        action="session_revoked",
        target_type="session",
        target_id=session_id,
        ip_address=client_ip(request),
    )
    return APIResponse(message="Session revoked")


# ---- Two-factor authentication ----

@router.get("/totp/status", response_model=TotpStatusResponse)
def totp_status(
    current_user: CurrentUser = Depends(get_current_user),
    totp: TotpService = Depends(get_totp_service),
):
    return totp.get_totp_status(current_user.account_id)


@router.post("/totp/setup", response_model=TotpSetupResponse)
def totp_setup(
    current_user: CurrentUser = Depends(get_current_user),
    totp: TotpService = Depends(get_totp_service),
):
    """
    Start 2FA setup

    Returns the secret, a QR code for authenticator apps and one-time
    backup codes. 2FA stays off until /totp/verify succeeds.
    """
    result = totp.setup_totp(current_user.account_id)
    return TotpSetupResponse(
        secret=result.secret,
        otpauth_url=result.otpauth_url,
        qr_code=result.qr_code,
        backup_codes=result.backup_codes,
    )


@router.post("/totp/verify", response_model=APIResponse)
def totp_verify(
    body: TotpVerifyRequest,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    totp: TotpService = Depends(get_totp_service),
    audit: AuditService = Depends(get_audit_service),
):
    if not totp.verify_and_enable_totp(current_user.account_id, body.code):
        raise ValidationError("Invalid TOTP code", code="INVALID_TOTP")

    audit.log_event(
        account_id=current_user.account_id,
        action="totp_enabled",
        target_type="user",
        target_id=current_user.account_id,
        ip_address=client_ip(request),
    )
    return APIResponse(message="Two-factor authentication enabled")


@router.post("/totp/disable", response_model=APIResponse)
def totp_disable(
    body: TotpDisableRequest,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    totp: TotpService = Depends(get_totp_service),
    audit: AuditService = Depends(get_audit_service),
):
    if not totp.disable_totp(current_user.account_id, body.password):
        raise AuthenticationError("Password is incorrect", code="INVALID_PASSWORD")

    audit.log_event(
        account_id=current_user.account_id,
        action="totp_disabled",
        target_type="user",
        target_id=current_user.account_id,
        ip_address=client_ip(request),
    )
    return APIResponse(message="Two-factor authentication disabled")


@router.post("/totp/backup-codes", response_model=BackupCodesResponse)
def totp_backup_codes(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    totp: TotpService = Depends(get_totp_service),
    audit: AuditService = Depends(get_audit_service),
):
    codes = totp.regenerate_backup_codes(current_user.account_id)
    if codes is None:
        raise ValidationError("Two-factor authentication is not enabled", code="TOTP_NOT_ENABLED")

    audit.log_event(
        account_id=current_user.account_id,
        action="backup_codes_regenerated",
        target_type="user",
        target_id=current_user.account_id,
        ip_address=client_ip(request),
    )
    return BackupCodesResponse(backup_codes=codes)
