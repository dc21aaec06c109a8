"""TOTP multi-factor engine - setup, verification and single-use backup codes"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orchestrator.config import Settings, settings as default_settings
from orchestrator.core.exceptions import ConflictError, NotFoundError, PolicyViolationError
from orchestrator.core.metrics import BACKUP_CODE_REUSE
from orchestrator.core.security import (
    generate_backup_codes,
    generate_totp_secret,
    hash_token,
    normalize_backup_code,
    qr_png_data_url,
    totp_provisioning_uri,
    utcnow,
    verify_password,
    verify_totp,
)
from orchestrator.models.account import Account, UsedBackupCode
from orchestrator.schemas.session import TotpStatusResponse
from orchestrator.services.audit_service import AuditService
from orchestrator.services.rbac_service import GroupService

logger = logging.getLogger(__name__)


@dataclass
class TotpSetupResult:
    secret: str
    otpauth_url: str
    qr_code: str
    backup_codes: List[str]


class TotpService:
    """
    Per-account TOTP state machine: disabled -> pending -> enabled.

    Pending means a secret is stored but has never been confirmed with a
    valid code; it cannot be used to log in until it is.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.settings = settings or default_settings
        self.clock = clock or utcnow
        self.groups = GroupService(db, self.settings, self.clock)
        self.audit = AuditService(db)

    def is_totp_enabled(self, account_id: str) -> bool:
        enabled = self.db.query(Account.totp_enabled).filter(Account.id == account_id).scalar()
        return bool(enabled)

    def setup_totp(self, account_id: str) -> TotpSetupResult:
        """
        Start setup: new secret, provisioning QR code and backup codes

        Raises:
            NotFoundError: If the account does not exist
            ConflictError: If two-factor authentication is already enabled
        """
        account = self.db.get(Account, account_id)
        if account is None:
            raise NotFoundError("User", code="USER_NOT_FOUND")
        if account.totp_enabled:
            raise ConflictError("Two-factor authentication is already enabled", code="TOTP_ALREADY_ENABLED")

        secret = generate_totp_secret()
        otpauth_url = totp_provisioning_uri(secret, account.username, self.settings.TOTP_ISSUER)
        backup_codes = generate_backup_codes(self.settings.BACKUP_CODE_COUNT)

        account.totp_secret = secret
        account.backup_codes_json = self._dump_hashes(backup_codes)
        account.updated_at = self.clock()
        self._clear_used_codes(account_id)
        self.db.commit()

        return TotpSetupResult(
            secret=secret,
            otpauth_url=otpauth_url,
            qr_code=qr_png_data_url(otpauth_url),
            backup_codes=backup_codes,
        )

    def verify_and_enable_totp(self, account_id: str, code: str) -> bool:
        """Confirm a pending secret with a live code; the only way to enable 2FA"""
        account = self.db.get(Account, account_id)
        if account is None or not account.totp_secret or account.totp_enabled:
            return False

        if not verify_totp(code, account.totp_secret, for_time=self.clock()):
            return False

        account.totp_enabled = True
        account.updated_at = self.clock()
        self.db.commit()
        logger.info(f"Two-factor authentication enabled for account {account_id}")
        return True

    def verify_totp_code(self, account_id: str, code: str, ip_address: Optional[str] = None) -> bool:
        """
        Second login factor: a live code, or else an unspent backup code.

        A backup code is spent by inserting (account, code hash) under a
        unique constraint. The insert succeeds for exactly one caller, even
        when the same code is presented concurrently.
        """
        account = self.db.get(Account, account_id)
        if account is None or not account.totp_secret or not account.totp_enabled:
            return False

        if verify_totp(code, account.totp_secret, for_time=self.clock()):
            return True

        code_hash = hash_token(normalize_backup_code(code))
        if code_hash not in self._load_hashes(account):
            return False

        self.db.add(UsedBackupCode(account_id=account_id, code_hash=code_hash, used_at=self.clock()))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            BACKUP_CODE_REUSE.inc()
            logger.warning(f"Rejected reuse of a spent backup code for account {account_id} ip={ip_address}")
            self.audit.log_event(
                account_id=account_id,
                action="backup_code_reuse",
                target_type="user",
                target_id=account_id,
                ip_address=ip_address,
            )
            return False

        logger.info(f"Backup code redeemed for account {account_id}")
        return True

    def disable_totp(self, account_id: str, password: str) -> bool:
        """
        Turn 2FA off after re-checking the password

        Raises:
            PolicyViolationError: If a group the account belongs to requires 2FA
        """
        account = self.db.get(Account, account_id)
        if account is None:
            return False

        if not verify_password(password, account.password_hash):
            return False

        if not self.groups.can_user_disable_totp(account_id):
            raise PolicyViolationError(
                "Cannot disable 2FA: required by group membership",
                code="TOTP_REQUIRED_BY_GROUP",
            )

        self._clear_totp(account)
        self.db.commit()
        logger.info(f"Two-factor authentication disabled for account {account_id}")
        return True

    def reset_totp_for_user(self, account_id: str) -> bool:
        """Administrative reset; authorization is the caller's job"""
        account = self.db.get(Account, account_id)
        if account is None:
            return False

        self._clear_totp(account)
        self.db.commit()
        logger.info(f"Two-factor authentication reset for account {account_id}")
        return True

    def regenerate_backup_codes(self, account_id: str) -> Optional[List[str]]:
        """Issue a fresh set of backup codes; None unless 2FA is enabled"""
        account = self.db.get(Account, account_id)
        if account is None or not account.totp_enabled:
            return None

        backup_codes = generate_backup_codes(self.settings.BACKUP_CODE_COUNT)
        account.backup_codes_json = self._dump_hashes(backup_codes)
        account.updated_at = self.clock()
        self._clear_used_codes(account_id)
        self.db.commit()
        return backup_codes

    def get_totp_status(self, account_id: str) -> TotpStatusResponse:
        account = self.db.get(Account, account_id)
        if account is None:
            return TotpStatusResponse(enabled=False, backup_codes_remaining=0)

        issued = len(self._load_hashes(account))
        used = (
            self.db.query(func.count(UsedBackupCode.id))
            .filter(UsedBackupCode.account_id == account_id)
            .scalar()
        ) or 0
        return TotpStatusResponse(
            enabled=bool(account.totp_enabled),
            backup_codes_remaining=max(0, issued - used),
        )

    def _clear_totp(self, account: Account) -> None:
        account.totp_secret = None
        account.totp_enabled = False
        account.backup_codes_json = None
        account.updated_at = self.clock()
        self._clear_used_codes(account.id)

    def _clear_used_codes(self, account_id: str) -> None:
        self.db.query(UsedBackupCode).filter(UsedBackupCode.account_id == account_id).delete(
            synchronize_session=False
        )

    @staticmethod
    def _dump_hashes(codes: List[str]) -> str:
        return json.dumps([hash_token(normalize_backup_code(code)) for code in codes])

    @staticmethod
    def _load_hashes(account: Account) -> List[str]:
        if not account.backup_codes_json:
            return []
        try:
            hashes = json.loads(account.backup_codes_json)
        except json.JSONDecodeError:
            logger.error(f"Corrupt backup code list for account {account.id}")
            return []
        return hashes if isinstance(hashes, list) else []
