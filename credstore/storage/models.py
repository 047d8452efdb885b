from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class TokenKind(str, Enum):
    SESSION = "sessionToken"
    KEY_FETCH = "keyFetchToken"
    PASSWORD_FORGOT = "passwordForgotToken"
    ACCOUNT_RESET = "accountResetToken"


class DeviceType(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
    TABLET = "tablet"
    OTHER = "other"
    UNKNOWN = "unknown"


@dataclass
class Account:
    uid: str
    email: str
    normalized_email: str
    email_code: str
    email_verified: bool = False
    verifier_version: int = 1
    verify_hash: Optional[str] = None
    auth_salt: Optional[str] = None
    ka: Optional[str] = None
    wrap_wrap_kb: Optional[str] = None
    verifier_set_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    locale: Optional[str] = None


@dataclass
class EmailRecord:
    email: str
    normalized_email: str
    uid: str
    email_code: str
    is_verified: bool = False
    is_primary: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountRecord:
    """Read-time view of an account joined with every email it owns."""

    uid: str
    email: str
    email_code: str
    email_verified: bool
    verifier_version: int
    verify_hash: Optional[str]
    auth_salt: Optional[str]
    ka: Optional[str]
    wrap_wrap_kb: Optional[str]
    verifier_set_at: datetime
    created_at: datetime
    locale: Optional[str]
    emails: List[EmailRecord]
    primary_email: EmailRecord
    # Set by callers that want new session tokens to start unverified
    token_verification_id: Optional[str] = None

    @classmethod
    def build(cls, account: Account, emails: List[EmailRecord]) -> "AccountRecord":
        ordered = sorted(emails, key=lambda e: (not e.is_primary, e.created_at))
        primary = next((e for e in ordered if e.is_primary), None)
        if primary is None:
            primary = EmailRecord(
                email=account.email,
                normalized_email=account.normalized_email,
                uid=account.uid,
                email_code=account.email_code,
                is_verified=account.email_verified,
                is_primary=True,
                created_at=account.created_at,
            )
            ordered.insert(0, primary)
        return cls(
            uid=account.uid,
            email=primary.email,
            email_code=account.email_code,
            email_verified=account.email_verified,
            verifier_version=account.verifier_version,
            verify_hash=account.verify_hash,
            auth_salt=account.auth_salt,
            ka=account.ka,
            wrap_wrap_kb=account.wrap_wrap_kb,
            verifier_set_at=account.verifier_set_at,
            created_at=account.created_at,
            locale=account.locale,
            emails=ordered,
            primary_email=primary,
        )


@dataclass
class Token:
    """Fields shared by every token kind; ``token_id`` is unique across kinds."""

    kind: ClassVar[TokenKind]

    token_id: str
    auth_key: str
    uid: str
    created_at: datetime

    def expires_at(self, lifetime: Optional[timedelta]) -> Optional[datetime]:
        if lifetime is None:
            return None
        return self.created_at + lifetime


@dataclass
class SessionToken(Token):
    kind: ClassVar[TokenKind] = TokenKind.SESSION

    ua_browser: Optional[str] = None
    ua_browser_version: Optional[str] = None
    ua_os: Optional[str] = None
    ua_os_version: Optional[str] = None
    ua_device_type: Optional[str] = None
    ua_form_factor: Optional[str] = None
    last_access_time: Optional[datetime] = None
    location: Optional[Dict] = None
    token_verification_id: Optional[str] = None
    # Joined from the account and device rows on read
    email: Optional[str] = None
    email_code: Optional[str] = None
    email_verified: bool = False
    verifier_set_at: Optional[datetime] = None
    device_id: Optional[str] = None
    # None means the token never expires
    lifetime: Optional[timedelta] = None

    @property
    def token_verified(self) -> bool:
        return self.token_verification_id is None


@dataclass
class KeyFetchToken(Token):
    kind: ClassVar[TokenKind] = TokenKind.KEY_FETCH

    key_bundle: Optional[str] = None
    token_verification_id: Optional[str] = None
    email_verified: bool = False


@dataclass
class PasswordForgotToken(Token):
    kind: ClassVar[TokenKind] = TokenKind.PASSWORD_FORGOT

    pass_code: Optional[str] = None
    tries: int = 3
    email: Optional[str] = None


@dataclass
class AccountResetToken(Token):
    kind: ClassVar[TokenKind] = TokenKind.ACCOUNT_RESET


TOKEN_CLASSES: Dict[TokenKind, type] = {
    TokenKind.SESSION: SessionToken,
    TokenKind.KEY_FETCH: KeyFetchToken,
    TokenKind.PASSWORD_FORGOT: PasswordForgotToken,
    TokenKind.ACCOUNT_RESET: AccountResetToken,
}

# Telemetry fields overlaid from the metadata cache onto durable session rows
SESSION_TELEMETRY_FIELDS = (
    "ua_browser",
    "ua_browser_version",
    "ua_os",
    "ua_os_version",
    "ua_device_type",
    "ua_form_factor",
    "last_access_time",
    "location",
)


@dataclass
class Device:
    id: str
    uid: str
    session_token_id: Optional[str]
    name: Optional[str] = None
    type: Optional[str] = None
    push_callback: Optional[str] = None
    push_public_key: Optional[str] = None
    push_auth_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    # Merged from the bound session token on read
    last_access_time: Optional[datetime] = None
    ua_browser: Optional[str] = None
    ua_browser_version: Optional[str] = None
    ua_os: Optional[str] = None
    ua_os_version: Optional[str] = None
    ua_device_type: Optional[str] = None
    location: Optional[Dict] = None


@dataclass
class UnblockCode:
    uid: str
    code_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SigninCode:
    code_hash: str
    uid: str
    flow_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityEvent:
    uid: str
    name: str
    ip_addr: Optional[str] = None
    token_id: Optional[str] = None
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
