from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from credstore.logging import get_logger
from credstore.storage.errors import ConstraintViolation
from credstore.storage.models import (
    Account,
    Device,
    EmailRecord,
    KeyFetchToken,
    PasswordForgotToken,
    SecurityEvent,
    SessionToken,
    SigninCode,
    Token,
    TokenKind,
    UnblockCode,
)


class MemoryStore:
    """In-memory durable store used for tests and local development.

    Rows are copied on the way in and out so callers never hold live
    references into the tables.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # normalized email -> record
        self.emails: Dict[str, EmailRecord] = {}
        self.tokens: Dict[str, Token] = {}
        # (uid, device id) -> device
        self.devices: Dict[tuple[str, str], Device] = {}
        self.unblock_codes: Dict[str, UnblockCode] = {}
        self.signin_codes: Dict[str, SigninCode] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so cascading helpers can call each other under the same lock
        self._data_lock = threading.RLock()

    def ping(self) -> None:
        return None

    def close(self) -> None:
        return None

    # accounts
    def create_account(self, account: Account, email: EmailRecord) -> Account:
        with self._data_lock:
            if account.uid in self.accounts:
                raise ConstraintViolation("account already exists", {"field": "uid"})
            if email.normalized_email in self.emails:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.accounts[account.uid] = copy.deepcopy(account)
            self.emails[email.normalized_email] = copy.deepcopy(email)
            return copy.deepcopy(account)

    def get_account(self, uid: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(uid)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, normalized_email: str) -> Optional[Account]:
        """Look up an account by its current primary email."""
        with self._data_lock:
            return next(
                (
                    copy.deepcopy(a)
                    for a in self.accounts.values()
                    if a.normalized_email == normalized_email
                ),
                None,
            )

    def update_account(self, uid: str, **fields: Any) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(uid)
            if not account:
                return None
            for name, value in fields.items():
                setattr(account, name, value)
            return copy.deepcopy(account)

    def delete_account(self, uid: str) -> bool:
        with self._data_lock:
            if uid not in self.accounts:
                return False
            self.accounts.pop(uid, None)
            for normalized, record in list(self.emails.items()):
                if record.uid == uid:
                    self.emails.pop(normalized, None)
            self.delete_account_tokens(uid)
            self.unblock_codes.pop(uid, None)
            for code_hash, code in list(self.signin_codes.items()):
                if code.uid == uid:
                    self.signin_codes.pop(code_hash, None)
            return True

    # emails
    def create_email(self, record: EmailRecord) -> EmailRecord:
        with self._data_lock:
            if record.uid not in self.accounts:
                raise ConstraintViolation("account does not exist", {"field": "uid"})
            if record.normalized_email in self.emails:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.emails[record.normalized_email] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def get_email(self, normalized_email: str) -> Optional[EmailRecord]:
        with self._data_lock:
            record = self.emails.get(normalized_email)
            return copy.deepcopy(record) if record else None

    def list_emails(self, uid: str) -> List[EmailRecord]:
        with self._data_lock:
            return [copy.deepcopy(e) for e in self.emails.values() if e.uid == uid]

    def delete_email(self, uid: str, normalized_email: str) -> bool:
        with self._data_lock:
            record = self.emails.get(normalized_email)
            if not record or record.uid != uid:
                return False
            if record.is_primary:
                raise ConstraintViolation("cannot delete primary email", {"field": "email"})
            self.emails.pop(normalized_email, None)
            return True

    def set_primary_email(self, uid: str, normalized_email: str) -> bool:
        with self._data_lock:
            target = self.emails.get(normalized_email)
            account = self.accounts.get(uid)
            if not target or target.uid != uid or not account:
                return False
            for record in self.emails.values():
                if record.uid == uid:
                    record.is_primary = False
            target.is_primary = True
            account.email = target.email
            account.normalized_email = target.normalized_email
            account.email_verified = target.is_verified
            account.email_code = target.email_code
            return True

    def mark_email_verified(self, uid: str, normalized_email: str) -> bool:
        with self._data_lock:
            record = self.emails.get(normalized_email)
            account = self.accounts.get(uid)
            if not record or record.uid != uid or not account:
                return False
            record.is_verified = True
            if record.is_primary:
                account.email_verified = True
            return True

    # tokens
    def create_token(self, token: Token) -> Token:
        with self._data_lock:
            if token.uid not in self.accounts:
                raise ConstraintViolation("account does not exist", {"field": "uid"})
            if token.token_id in self.tokens:
                raise ConstraintViolation("token id already exists", {"field": "token_id"})
            self.tokens[token.token_id] = copy.deepcopy(token)
            return self._joined(self.tokens[token.token_id])

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(token_id)
            return self._joined(token) if token else None

    def list_session_tokens(self, uid: str) -> List[SessionToken]:
        with self._data_lock:
            rows = [
                self._joined(t)
                for t in self.tokens.values()
                if t.uid == uid and t.kind == TokenKind.SESSION
            ]
        return sorted(rows, key=lambda t: t.created_at)

    def update_token(self, token_id: str, **fields: Any) -> bool:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token:
                return False
            for name, value in fields.items():
                setattr(token, name, value)
            return True

    def delete_token(self, token_id: str) -> bool:
        with self._data_lock:
            token = self.tokens.pop(token_id, None)
            if not token:
                return False
            if token.kind == TokenKind.SESSION:
                for key, device in list(self.devices.items()):
                    if device.session_token_id == token_id:
                        self.devices.pop(key, None)
            return True

    def exchange_forgot_token(self, forgot_token_id: str, reset_token: Token) -> Optional[Token]:
        """Consume a forgot-password token and store ``reset_token`` in its place.

        Returns ``None`` when the forgot-password token was already consumed.
        """
        with self._data_lock:
            forgot = self.tokens.get(forgot_token_id)
            if not forgot or forgot.kind != TokenKind.PASSWORD_FORGOT:
                return None
            if reset_token.token_id in self.tokens:
                raise ConstraintViolation("token id already exists", {"field": "token_id"})
            del self.tokens[forgot_token_id]
            self.tokens[reset_token.token_id] = copy.deepcopy(reset_token)
            account = self.accounts.get(forgot.uid)
            if account:
                # Receiving the code proves ownership of the primary email
                record = self.emails.get(account.normalized_email)
                if record:
                    record.is_verified = True
                account.email_verified = True
            return self._joined(self.tokens[reset_token.token_id])

    def delete_account_tokens(self, uid: str) -> int:
        """Delete every token and device belonging to ``uid``."""
        with self._data_lock:
            stale = [tid for tid, t in self.tokens.items() if t.uid == uid]
            for tid in stale:
                self.tokens.pop(tid, None)
            for key in [k for k in self.devices if k[0] == uid]:
                self.devices.pop(key, None)
            return len(stale)

    def clear_token_verification(self, uid: str, token_verification_id: str) -> int:
        with self._data_lock:
            cleared = 0
            for token in self.tokens.values():
                if (
                    token.uid == uid
                    and getattr(token, "token_verification_id", None) == token_verification_id
                ):
                    token.token_verification_id = None
                    cleared += 1
            return cleared

    def prune_tokens(self, kind: TokenKind, created_before: datetime) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, t in self.tokens.items()
                if t.kind == kind and t.created_at < created_before
            ]
            if kind == TokenKind.SESSION:
                # Device-bound sessions never expire
                bound = {d.session_token_id for d in self.devices.values()}
                stale = [tid for tid in stale if tid not in bound]
            for tid in stale:
                self.delete_token(tid)
            return len(stale)

    def _joined(self, token: Token) -> Token:
        joined = copy.deepcopy(token)
        account = self.accounts.get(token.uid)
        if isinstance(joined, SessionToken):
            if account:
                joined = replace(
                    joined,
                    email=account.email,
                    email_code=account.email_code,
                    email_verified=account.email_verified,
                    verifier_set_at=account.verifier_set_at,
                )
            device = next(
                (d for d in self.devices.values() if d.session_token_id == token.token_id),
                None,
            )
            joined.device_id = device.id if device else None
        elif isinstance(joined, KeyFetchToken) and account:
            joined.email_verified = account.email_verified
        elif isinstance(joined, PasswordForgotToken) and account:
            joined.email = account.email
        return joined

    # devices
    def create_device(self, device: Device) -> Device:
        with self._data_lock:
            if device.uid not in self.accounts:
                raise ConstraintViolation("account does not exist", {"field": "uid"})
            if (device.uid, device.id) in self.devices:
                raise ConstraintViolation(
                    "device already exists", {"field": "device_id", "device_id": device.id}
                )
            bound = self._device_for_session(device.session_token_id)
            if bound:
                raise ConstraintViolation(
                    "session token already bound",
                    {"field": "session_token_id", "device_id": bound.id},
                )
            self.devices[(device.uid, device.id)] = copy.deepcopy(device)
            return copy.deepcopy(device)

    def get_device(self, uid: str, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get((uid, device_id))
            return copy.deepcopy(device) if device else None

    def get_device_by_session(self, session_token_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self._device_for_session(session_token_id)
            return copy.deepcopy(device) if device else None

    def list_devices(self, uid: str) -> List[Device]:
        with self._data_lock:
            rows = [copy.deepcopy(d) for (owner, _), d in self.devices.items() if owner == uid]
        return sorted(rows, key=lambda d: d.created_at)

    def update_device(self, uid: str, device_id: str, **fields: Any) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get((uid, device_id))
            if not device:
                return None
            new_session = fields.get("session_token_id")
            if new_session and new_session != device.session_token_id:
                bound = self._device_for_session(new_session)
                if bound and bound.id != device_id:
                    raise ConstraintViolation(
                        "session token already bound",
                        {"field": "session_token_id", "device_id": bound.id},
                    )
            for name, value in fields.items():
                setattr(device, name, value)
            return copy.deepcopy(device)

    def delete_device(self, uid: str, device_id: str) -> bool:
        with self._data_lock:
            return self.devices.pop((uid, device_id), None) is not None

    def _device_for_session(self, session_token_id: Optional[str]) -> Optional[Device]:
        if not session_token_id:
            return None
        return next(
            (d for d in self.devices.values() if d.session_token_id == session_token_id),
            None,
        )

    # one-time codes
    def upsert_unblock_code(self, code: UnblockCode) -> None:
        with self._data_lock:
            if code.uid not in self.accounts:
                raise ConstraintViolation("account does not exist", {"field": "uid"})
            self.unblock_codes[code.uid] = copy.deepcopy(code)

    def get_unblock_code(self, uid: str) -> Optional[UnblockCode]:
        with self._data_lock:
            code = self.unblock_codes.get(uid)
            return copy.deepcopy(code) if code else None

    def delete_unblock_code(self, uid: str, code_hash: Optional[str] = None) -> bool:
        """Delete the uid's code, only if it still has ``code_hash`` when given."""
        with self._data_lock:
            code = self.unblock_codes.get(uid)
            if not code or (code_hash is not None and code.code_hash != code_hash):
                return False
            self.unblock_codes.pop(uid, None)
            return True

    def signin_code_exists(self, code_hash: str) -> bool:
        with self._data_lock:
            return code_hash in self.signin_codes

    def create_signin_code(self, code: SigninCode) -> SigninCode:
        with self._data_lock:
            if code.uid not in self.accounts:
                raise ConstraintViolation("account does not exist", {"field": "uid"})
            if code.code_hash in self.signin_codes:
                raise ConstraintViolation("signin code already exists", {"field": "code"})
            self.signin_codes[code.code_hash] = copy.deepcopy(code)
            return copy.deepcopy(code)

    def pop_signin_code(self, code_hash: str) -> Optional[SigninCode]:
        with self._data_lock:
            return self.signin_codes.pop(code_hash, None)

    def prune_unblock_codes(self, created_before: datetime) -> int:
        with self._data_lock:
            stale = [uid for uid, c in self.unblock_codes.items() if c.created_at < created_before]
            for uid in stale:
                self.unblock_codes.pop(uid, None)
            return len(stale)

    def prune_signin_codes(self, created_before: datetime) -> int:
        with self._data_lock:
            stale = [h for h, c in self.signin_codes.items() if c.created_at < created_before]
            for code_hash in stale:
                self.signin_codes.pop(code_hash, None)
            return len(stale)

    # security events
    def add_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(copy.deepcopy(event))

    def list_security_events(self, uid: str, ip_addr: Optional[str] = None) -> List[SecurityEvent]:
        with self._data_lock:
            rows = [
                copy.deepcopy(e)
                for e in self.security_events
                if e.uid == uid and (ip_addr is None or e.ip_addr == ip_addr)
            ]
        return sorted(rows, key=lambda e: e.created_at, reverse=True)
