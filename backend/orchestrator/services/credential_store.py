"""Credential store - accounts and password verification"""

from datetime import datetime
from typing import Callable, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orchestrator.config import Settings, settings as default_settings
from orchestrator.core.exceptions import ConflictError, ValidationError
from orchestrator.core.security import (
    get_dummy_password_hash,
    get_password_hash,
    utcnow,
    verify_password,
)
from orchestrator.models.account import Account, new_id
from orchestrator.models.group import DEFAULT_GROUP_ID, Membership, Role
from orchestrator.models.security import RefreshToken
from orchestrator.schemas.account import AccountResponse, MAX_PASSWORD_BYTES
from orchestrator.services.rbac_service import ensure_default_group

logger = logging.getLogger(__name__)


class CredentialStore:
    """Persists accounts and verifies passwords"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.settings = settings or default_settings
        self.clock = clock or utcnow

    def _hash(self, password: str) -> str:
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes", code="PASSWORD_TOO_LONG")
        return get_password_hash(password, self.settings.BCRYPT_ROUNDS)

    def create_account(self, username: str, password: str, elevated: bool = False) -> str:
        """
        Create new account

        Args:
            username: Unique, case-sensitive username
            password: Plain text password
            elevated: System admin flag; bypasses group checks

        Returns:
            New account id

        Raises:
            ConflictError: If the username is taken
        """
        if self.db.query(Account.id).filter(Account.username == username).first():
            raise ConflictError("Username already exists", code="USERNAME_EXISTS")

        now = self.clock()
        account = Account(
            id=new_id(),
            username=username,
            password_hash=self._hash(password),
            is_system_admin=elevated,
            totp_enabled=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(account)

        # System admins need no group membership; everyone else starts as a default viewer
        if not elevated:
            ensure_default_group(self.db, now)
            self.db.add(Membership(
                account_id=account.id,
                group_id=DEFAULT_GROUP_ID,
                role=Role.VIEWER.value,
                created_at=now,
            ))

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Username already exists", code="USERNAME_EXISTS")

        logger.info(f"Created account: {username} (system_admin: {elevated})")
        return account.id

    def validate_credentials(self, username: str, password: str) -> Optional[AccountResponse]:
        """
        Check a username/password pair

        A missing username still pays for one bcrypt comparison so the
        two failure paths take about the same time.

        Returns:
            The account on success, None otherwise
        """
        account = self.db.query(Account).filter(Account.username == username).first()

        if account is None:
            verify_password(password, get_dummy_password_hash(self.settings.BCRYPT_ROUNDS))
            return None

        if not verify_password(password, account.password_hash):
            return None

        account.last_login_at = self.clock()
        self.db.commit()
        return AccountResponse.model_validate(account)

    def change_password(self, account_id: str, old_password: str, new_password: str) -> bool:
        """
        Replace the password after verifying the old one.

        Every refresh token of the account is revoked in the same
        transaction, forcing re-authentication on all devices.
        """
        account = self.db.get(Account, account_id)
        if account is None:
            return False

        if not verify_password(old_password, account.password_hash):
            return False

        account.password_hash = self._hash(new_password)
        account.updated_at = self.clock()
        revoked = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.account_id == account_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()

        logger.info(f"Password changed for account {account_id}; revoked {revoked} sessions")
        return True

    def get_account(self, account_id: str) -> Optional[AccountResponse]:
        account = self.db.get(Account, account_id)
        return AccountResponse.model_validate(account) if account else None

    def get_account_by_username(self, username: str) -> Optional[AccountResponse]:
        account = self.db.query(Account).filter(Account.username == username).first()
        return AccountResponse.model_validate(account) if account else None

    def list_accounts(self) -> List[AccountResponse]:
        accounts = self.db.query(Account).order_by(Account.created_at).all()
        return [AccountResponse.model_validate(account) for account in accounts]

    def count_accounts(self) -> int:
        return self.db.query(func.count(Account.id)).scalar() or 0

    def delete_account(self, account_id: str) -> bool:
        """Delete an account, its sessions and its memberships"""
        account = self.db.get(Account, account_id)
        if account is None:
            return False

        username = account.username
        self.db.query(RefreshToken).filter(RefreshToken.account_id == account_id).delete(
            synchronize_session=False
        )
        self.db.delete(account)
        self.db.commit()

        logger.info(f"Deleted account: {username}")
        return True

    def ensure_initial_admin(self) -> Optional[str]:
        """
        Provision a first system admin when no accounts exist.

        Only in development; production must go through the setup
        endpoint.
        """
        if self.count_accounts() > 0:
            return None

        if not self.settings.is_development:
            logger.warning("No users exist. Create a system admin with: POST /api/v1/auth/setup")
            return None

        account_id = self.create_account(
            self.settings.DEFAULT_ADMIN_USERNAME,
            self.settings.DEFAULT_ADMIN_PASSWORD,
            elevated=True,
        )
        logger.warning(f"Created default system admin (username: {self.settings.DEFAULT_ADMIN_USERNAME})")
        return account_id
