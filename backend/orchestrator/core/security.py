"""Security utilities - JWT, password hashing, one-time passwords"""

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from io import BytesIO
from typing import Optional, Dict, Any, List

import bcrypt
import pyotp
import qrcode
from jose import JWTError, jwt

from orchestrator.config import Settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

TOTP_DIGITS = 6
TOTP_PERIOD_SECONDS = 30
TOTP_VALID_WINDOW = 1


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        # Malformed stored hash or an over-long password
        return False


def get_password_hash(password: str, rounds: int) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password
        rounds: bcrypt work factor

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=rounds)
    ).decode('utf-8')


@lru_cache(maxsize=8)
def get_dummy_password_hash(rounds: int) -> str:
    """
    Fixed hash that no password matches, at the configured work factor.

    Compared against when a username does not exist so the miss path
    costs about as much as a real verification.
    """
    return get_password_hash(secrets.token_urlsafe(32), rounds)


def hash_token(value: str) -> str:
    """SHA-256 hex digest used for refresh tokens and backup codes at rest."""
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def _encode(claims: Dict[str, Any], settings: Settings) -> str:
    return jwt.encode(claims, settings.get_jwt_secret(), algorithm=settings.ALGORITHM)


def create_access_token(
    data: Dict[str, Any],
    settings: Settings,
    expires_delta: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Create JWT access token

    Args:
        data: Claims to encode (sub, username, is_system_admin, role)
        settings: Settings providing the signing key and lifetime
        expires_delta: Token expiration time
        now: Issue time, defaults to the current UTC time

    Returns:
        str: Encoded JWT token
    """
    issued = now or utcnow()
    expire = issued + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = data.copy()
    to_encode.update({
        "typ": ACCESS_TOKEN_TYPE,
        "exp": expire.replace(tzinfo=timezone.utc),
        "iat": issued.replace(tzinfo=timezone.utc),
        "jti": secrets.token_urlsafe(16),
    })
    return _encode(to_encode, settings)


def create_refresh_token(
    subject: str,
    family_id: str,
    settings: Settings,
    expires_delta: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Create JWT refresh token.

    Carries only the account id, the token type and the family id; the
    jti makes two tokens minted in the same second distinct.
    """
    issued = now or utcnow()
    expire = issued + (expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS))
    to_encode = {
        "sub": subject,
        "typ": REFRESH_TOKEN_TYPE,
        "fam": family_id,
        "exp": expire.replace(tzinfo=timezone.utc),
        "iat": issued.replace(tzinfo=timezone.utc),
        "jti": secrets.token_urlsafe(16),
    }
    return _encode(to_encode, settings)


def decode_token(token: str, settings: Settings) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a JWT of any type

    Returns:
        Optional[Dict]: Decoded token data or None if invalid or expired
    """
    try:
        return jwt.decode(token, settings.get_jwt_secret(), algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def decode_access_token(token: str, settings: Settings) -> Optional[Dict[str, Any]]:
    """Decode a token and require it to be an access token."""
    payload = decode_token(token, settings)
    if not payload or payload.get("typ") != ACCESS_TOKEN_TYPE:
        return None
    return payload


# --- Two-factor helpers ---

def generate_totp_secret() -> str:
    # 32 base32 chars = 160 bits, the RFC 4226 recommended key size
    return pyotp.random_base32(length=32)


def build_totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_PERIOD_SECONDS)


def totp_provisioning_uri(secret: str, username: str, issuer: str) -> str:
    return build_totp(secret).provisioning_uri(name=username, issuer_name=issuer)


def verify_totp(code: str, secret: str, for_time: Optional[datetime] = None) -> bool:
    """Check a six-digit code with a one-step window either side."""
    code = (code or "").strip()
    if not code.isdigit() or len(code) != TOTP_DIGITS:
        return False
    if for_time is not None:
        for_time = for_time.replace(tzinfo=timezone.utc)
    return build_totp(secret).verify(code, for_time=for_time, valid_window=TOTP_VALID_WINDOW)


def qr_png_data_url(text: str) -> str:
    """Render text as a QR code PNG data URL."""
    img = qrcode.make(text)
    buf = BytesIO()
    img.save(buf, "PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def generate_backup_codes(count: int) -> List[str]:
    """Backup codes: 8 upper-case hex characters each."""
    return [secrets.token_hex(4).upper() for _ in range(count)]


def normalize_backup_code(code: str) -> str:
    return (code or "").strip().upper()
