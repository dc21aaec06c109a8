"""API dependencies - service wiring, authentication and authorization"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from orchestrator.config import settings
from orchestrator.core.database import get_db
from orchestrator.core.exceptions import AuthenticationError, AuthorizationError, TokenInvalidError
from orchestrator.models.group import Role
from orchestrator.services.audit_service import AuditService
from orchestrator.services.credential_store import CredentialStore
from orchestrator.services.rbac_service import GroupService
from orchestrator.services.session_registry import SessionRegistry
from orchestrator.services.token_service import SessionMetadata, TokenService
from orchestrator.services.totp_service import TotpService

# HTTP Bearer token scheme; missing headers are reported as our own 401
security = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    """Identity taken from a verified access token"""

    account_id: str
    username: str
    is_system_admin: bool
    role: Optional[str] = None


def get_credential_store(db: Session = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db, settings)


def get_group_service(db: Session = Depends(get_db)) -> GroupService:
    return GroupService(db, settings)


def get_token_service(db: Session = Depends(get_db)) -> TokenService:
    return TokenService(db, settings)


def get_totp_service(db: Session = Depends(get_db)) -> TotpService:
    return TotpService(db, settings)


def get_session_registry(db: Session = Depends(get_db)) -> SessionRegistry:
    return SessionRegistry(db)


def get_audit_service(db: Session = Depends(get_db)) -> AuditService:
    return AuditService(db)


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def session_metadata(request: Request) -> SessionMetadata:
    return SessionMetadata(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    tokens: TokenService = Depends(get_token_service),
) -> CurrentUser:
    """
    Get current user from the bearer access token

    Verification is stateless: signature and expiry only.

    Raises:
        AuthenticationError: If the token is missing, invalid or expired
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required")

    payload = tokens.verify_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise TokenInvalidError()

    return CurrentUser(
        account_id=payload["sub"],
        username=payload.get("username", ""),
        is_system_admin=bool(payload.get("is_system_admin")),
        role=payload.get("role"),
    )


def require_system_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    Raises:
        AuthorizationError: If the user is not a system admin
    """
    if not current_user.is_system_admin:
        raise AuthorizationError("System admin access required")
    return current_user


def require_group_role(minimum: Role) -> Callable[..., CurrentUser]:
    """Dependency factory checking the caller's role in the `group_id` path group"""

    def dependency(
        group_id: str,
        current_user: CurrentUser = Depends(get_current_user),
        groups: GroupService = Depends(get_group_service),
    ) -> CurrentUser:
        if not groups.has_group_role(current_user.account_id, group_id, minimum):
            raise AuthorizationError(f"{minimum.value} role required in this group")
        return current_user

    return dependency
