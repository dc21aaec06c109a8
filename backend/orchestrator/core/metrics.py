"""Prometheus counters for authentication and security events."""

from prometheus_client import Counter

LOGIN_ATTEMPTS = Counter(
    "orchestrator_auth_logins_total",
    "Login attempts by outcome",
    ["outcome"],
)
REFRESH_THEFT_DETECTED = Counter(
    "orchestrator_auth_refresh_theft_total",
    "Refresh token families revoked after reuse of a rotated token",
)
BACKUP_CODE_REUSE = Counter(
    "orchestrator_auth_backup_code_reuse_total",
    "Rejected redemptions of already spent backup codes",
)
