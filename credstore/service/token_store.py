from __future__ import annotations

import hmac
import secrets
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, NamedTuple, Optional, Type, TypeVar, Union

from credstore.config import Settings
from credstore.logging import credential_context, get_logger, hash_for_log
from credstore.service.errors import (
    AccountExistsError,
    BadRequestError,
    CannotDeletePrimaryEmailError,
    InvalidTokenError,
    InvalidVerificationCodeError,
    StorageError,
    UnknownAccountError,
)
from credstore.service.session_cache import SessionMetadataCache
from credstore.service.tokens import is_expired, new_token, token_lifetime
from credstore.service.user_agent import RegexUserAgentParser, UserAgentParser
from credstore.storage.errors import ConstraintViolation
from credstore.storage.models import (
    Account,
    AccountRecord,
    AccountResetToken,
    EmailRecord,
    KeyFetchToken,
    PasswordForgotToken,
    SecurityEvent,
    SessionToken,
    Token,
    TokenKind,
    normalize_email,
    utcnow,
)

T = TypeVar("T", bound=Token)

SECURITY_EVENT_NAMES = frozenset(
    {
        "account.create",
        "account.login",
        "account.reset",
        "account.login.blocked",
        "account.login.confirmedUnblockCode",
        "emails.clearBounces",
    }
)

# Fields a password reset may overwrite
_RESET_FIELDS = frozenset({"verify_hash", "auth_salt", "ka", "wrap_wrap_kb", "verifier_version"})


class IssuedToken(NamedTuple):
    """A freshly created token and the token data handed to the client once."""

    token: Token
    data: str


def _translate(exc: ConstraintViolation) -> Exception:
    # Duplicate accounts are handled in create_account; here uid means missing
    if exc.field == "uid":
        return UnknownAccountError()
    if exc.field == "email":
        return AccountExistsError("Email already exists")
    return StorageError(exc.message, detail={"field": exc.field})


class TokenStore:
    """Accounts, emails and the four token kinds sharing one identifier namespace."""

    def __init__(
        self,
        store,
        metadata: SessionMetadataCache,
        settings: Settings,
        *,
        ua_parser: Optional[UserAgentParser] = None,
    ) -> None:
        self.store = store
        self.metadata = metadata
        self.settings = settings
        self.ua_parser = ua_parser or RegexUserAgentParser()
        self.logger = get_logger(__name__)

    # accounts
    async def create_account(self, account: Account) -> AccountRecord:
        account = replace(account, normalized_email=normalize_email(account.email))
        primary = EmailRecord(
            email=account.email,
            normalized_email=account.normalized_email,
            uid=account.uid,
            email_code=account.email_code,
            is_verified=account.email_verified,
            is_primary=True,
            created_at=account.created_at,
        )
        try:
            self.store.create_account(account, primary)
        except ConstraintViolation as exc:
            raise AccountExistsError() from exc
        self.logger.info("account_created", uid=account.uid)
        return AccountRecord.build(account, [primary])

    def _record_for(self, account: Optional[Account]) -> AccountRecord:
        if account is None:
            raise UnknownAccountError()
        return AccountRecord.build(account, self.store.list_emails(account.uid))

    async def account(self, uid: str) -> AccountRecord:
        return self._record_for(self.store.get_account(uid))

    async def account_exists(self, email: str) -> bool:
        return self.store.get_account_by_email(normalize_email(email)) is not None

    async def email_record(self, email: str) -> AccountRecord:
        """Look up an account by its primary email only."""
        return self._record_for(self.store.get_account_by_email(normalize_email(email)))

    async def account_record(self, email: str) -> AccountRecord:
        """Look up an account by any email it owns, primary or secondary."""
        record = self.store.get_email(normalize_email(email))
        if record is None:
            raise UnknownAccountError()
        return self._record_for(self.store.get_account(record.uid))

    async def delete_account(self, record: Union[AccountRecord, Account]) -> None:
        with credential_context(uid=record.uid):
            if not self.store.delete_account(record.uid):
                raise UnknownAccountError()
            await self.metadata.clear(record.uid)
            self.logger.info("account_deleted")

    # emails
    async def create_email(
        self,
        uid: str,
        email: str,
        *,
        email_code: Optional[str] = None,
        is_verified: bool = False,
    ) -> EmailRecord:
        record = EmailRecord(
            email=email,
            normalized_email=normalize_email(email),
            uid=uid,
            email_code=email_code or secrets.token_hex(16),
            is_verified=is_verified,
            is_primary=False,
        )
        try:
            return self.store.create_email(record)
        except ConstraintViolation as exc:
            raise _translate(exc) from exc

    async def account_emails(self, uid: str) -> List[EmailRecord]:
        emails = self.store.list_emails(uid)
        return sorted(emails, key=lambda e: (not e.is_primary, e.created_at))

    async def delete_email(self, uid: str, email: str) -> None:
        try:
            deleted = self.store.delete_email(uid, normalize_email(email))
        except ConstraintViolation as exc:
            raise CannotDeletePrimaryEmailError() from exc
        if not deleted:
            raise UnknownAccountError("Unknown email")

    async def set_primary_email(self, uid: str, email: str) -> None:
        if not self.store.set_primary_email(uid, normalize_email(email)):
            raise UnknownAccountError("Unknown email")
        self.logger.info("primary_email_changed", uid=uid, email_hash=hash_for_log(email))

    async def verify_email(self, record: Union[AccountRecord, EmailRecord], email_code: str) -> bool:
        """Mark the addressed email verified when ``email_code`` matches.

        An account record addresses its primary email. Returns ``True`` when
        the email is verified afterwards; a mismatch changes nothing.
        """
        if isinstance(record, AccountRecord):
            normalized = record.primary_email.normalized_email
        else:
            normalized = record.normalized_email
        stored = self.store.get_email(normalized)
        if stored is None or stored.uid != record.uid:
            raise UnknownAccountError("Unknown email")
        if stored.is_verified:
            return True
        if not hmac.compare_digest(stored.email_code, email_code or ""):
            self.logger.warning("email_code_mismatch", uid=record.uid)
            return False
        self.store.mark_email_verified(stored.uid, normalized)
        return True

    # tokens
    def _issue(self, token: Token) -> Token:
        with credential_context(uid=token.uid, token_kind=token.kind.value):
            try:
                created = self.store.create_token(token)
            except ConstraintViolation as exc:
                raise _translate(exc) from exc
            self.logger.info("token_created")
        return created

    def _lookup(self, token_id: str, cls: Type[T]) -> T:
        token = self.store.get_token(token_id)
        if not isinstance(token, cls):
            raise InvalidTokenError()
        lifetime = token_lifetime(token, self.settings)
        if is_expired(token, lifetime):
            raise InvalidTokenError()
        if isinstance(token, SessionToken):
            token = replace(token, lifetime=lifetime)
        return token

    async def create_session_token(
        self,
        source: Union[AccountRecord, SessionToken],
        raw_user_agent: Optional[str] = None,
    ) -> IssuedToken:
        """Create a session token for the source's uid.

        A source still pending verification yields a pending token, so the new
        token keeps a bounded lifetime until it is verified.
        """
        derived = new_token(TokenKind.SESSION, self.settings.token_namespace)
        now = utcnow()
        token = SessionToken(
            token_id=derived.token_id,
            auth_key=derived.auth_key,
            uid=source.uid,
            created_at=now,
            last_access_time=now,
            token_verification_id=source.token_verification_id,
            **self.ua_parser.parse(raw_user_agent).as_token_fields(),
        )
        created = self._issue(token)
        created = replace(created, lifetime=token_lifetime(created, self.settings))
        return IssuedToken(created, derived.data)

    async def create_key_fetch_token(
        self,
        uid: str,
        key_bundle: str,
        *,
        token_verification_id: Optional[str] = None,
    ) -> IssuedToken:
        derived = new_token(TokenKind.KEY_FETCH, self.settings.token_namespace)
        token = KeyFetchToken(
            token_id=derived.token_id,
            auth_key=derived.auth_key,
            uid=uid,
            created_at=utcnow(),
            key_bundle=key_bundle,
            token_verification_id=token_verification_id,
        )
        return IssuedToken(self._issue(token), derived.data)

    async def create_password_forgot_token(
        self, record: Union[AccountRecord, EmailRecord]
    ) -> IssuedToken:
        derived = new_token(TokenKind.PASSWORD_FORGOT, self.settings.token_namespace)
        token = PasswordForgotToken(
            token_id=derived.token_id,
            auth_key=derived.auth_key,
            uid=record.uid,
            created_at=utcnow(),
            pass_code=secrets.token_hex(16),
            tries=self.settings.password_forgot_tries,
        )
        return IssuedToken(self._issue(token), derived.data)

    async def session_token(self, token_id: str) -> SessionToken:
        # Durable row only; cached telemetry is visible through sessions()
        return self._lookup(token_id, SessionToken)

    async def key_fetch_token(self, token_id: str) -> KeyFetchToken:
        return self._lookup(token_id, KeyFetchToken)

    async def password_forgot_token(self, token_id: str) -> PasswordForgotToken:
        return self._lookup(token_id, PasswordForgotToken)

    async def account_reset_token(self, token_id: str) -> AccountResetToken:
        return self._lookup(token_id, AccountResetToken)

    async def delete_session_token(self, token: SessionToken) -> None:
        self.store.delete_token(token.token_id)
        await self.metadata.evict(token.uid, token.token_id)

    async def delete_key_fetch_token(self, token: KeyFetchToken) -> None:
        self.store.delete_token(token.token_id)

    async def delete_password_forgot_token(self, token: PasswordForgotToken) -> None:
        self.store.delete_token(token.token_id)

    async def delete_account_reset_token(self, token: AccountResetToken) -> None:
        self.store.delete_token(token.token_id)

    async def update_password_forgot_token(self, token: PasswordForgotToken) -> None:
        if not self.store.update_token(token.token_id, tries=token.tries):
            raise InvalidTokenError()

    async def forgot_password_verified(self, token: PasswordForgotToken) -> IssuedToken:
        """Exchange a verified forgot-password token for an account-reset token."""
        derived = new_token(TokenKind.ACCOUNT_RESET, self.settings.token_namespace)
        created_at = max(utcnow(), token.created_at + timedelta(microseconds=1))
        reset = AccountResetToken(
            token_id=derived.token_id,
            auth_key=derived.auth_key,
            uid=token.uid,
            created_at=created_at,
        )
        with credential_context(uid=token.uid, token_kind=reset.kind.value):
            try:
                issued = self.store.exchange_forgot_token(token.token_id, reset)
            except ConstraintViolation as exc:
                raise _translate(exc) from exc
            if issued is None:
                # Already exchanged by a concurrent or replayed request
                self.logger.warning("forgot_token_replayed")
                raise InvalidTokenError()
            self.logger.info("token_created")
        return IssuedToken(issued, derived.data)

    async def reset_account(self, token: AccountResetToken, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - _RESET_FIELDS
        if unknown:
            raise BadRequestError(
                "unsupported account fields", detail={"fields": sorted(unknown)}
            )
        with credential_context(uid=token.uid, token_kind=token.kind.value):
            account = self.store.update_account(token.uid, verifier_set_at=utcnow(), **fields)
            if account is None:
                raise UnknownAccountError()
            removed = self.store.delete_account_tokens(token.uid)
            await self.metadata.clear(token.uid)
            self.logger.info("account_reset", tokens_removed=removed)

    async def verify_tokens(self, token_verification_id: str, uid: str) -> None:
        if not self.store.clear_token_verification(uid, token_verification_id):
            raise InvalidVerificationCodeError()

    async def sessions(self, uid: str) -> List[SessionToken]:
        return await self.metadata.sessions(uid)

    # security events
    async def security_event(self, event: SecurityEvent) -> dict:
        if event.name not in SECURITY_EVENT_NAMES:
            raise BadRequestError("unknown security event", detail={"name": event.name})
        self.store.add_security_event(event)
        return {}

    async def security_events(self, uid: str, ip_addr: Optional[str] = None) -> List[SecurityEvent]:
        return self.store.list_security_events(uid, ip_addr)

    # maintenance
    async def prune(self) -> Dict[str, int]:
        """Delete expired bounded tokens and codes; returns counts per kind."""
        now = utcnow()
        counts = {
            TokenKind.SESSION.value: self.store.prune_tokens(
                TokenKind.SESSION, now - self.settings.session_token_without_device_lifetime
            ),
            TokenKind.KEY_FETCH.value: self.store.prune_tokens(
                TokenKind.KEY_FETCH, now - self.settings.key_fetch_token_lifetime
            ),
            TokenKind.PASSWORD_FORGOT.value: self.store.prune_tokens(
                TokenKind.PASSWORD_FORGOT, now - self.settings.password_forgot_token_lifetime
            ),
            TokenKind.ACCOUNT_RESET.value: self.store.prune_tokens(
                TokenKind.ACCOUNT_RESET, now - self.settings.account_reset_token_lifetime
            ),
            "unblockCodes": self.store.prune_unblock_codes(
                now - self.settings.unblock_code_lifetime
            ),
            "signinCodes": self.store.prune_signin_codes(
                now - self.settings.signin_code_lifetime
            ),
        }
        self.logger.info("credentials_pruned", **counts)
        return counts

    async def ping(self) -> None:
        self.store.ping()
        if self.metadata.cache is not None:
            self.metadata.cache.verify_connection()

    async def close(self) -> None:
        if self.metadata.cache is not None:
            try:
                await self.metadata.cache.close()
            except Exception as exc:
                self.logger.warning("metadata_cache_close_failed", error=str(exc))
        self.store.close()
