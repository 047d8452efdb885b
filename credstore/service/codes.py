from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Callable, Optional

from credstore.config import Settings
from credstore.logging import get_logger
from credstore.service.errors import (
    InvalidSigninCodeError,
    InvalidUnblockCodeError,
    StorageError,
    UnknownAccountError,
)
from credstore.storage.errors import ConstraintViolation
from credstore.storage.models import SigninCode, UnblockCode, utcnow

# Crockford base32: no I, L, O or U
UNBLOCK_CODE_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_UNBLOCK_CODE_ALIASES = str.maketrans({"O": "0", "I": "1", "L": "1"})


def normalize_unblock_code(code: str) -> str:
    cleaned = (code or "").strip().upper().replace("-", "").replace(" ", "")
    return cleaned.translate(_UNBLOCK_CODE_ALIASES)


def _unblock_code_hash(uid: str, code: str) -> str:
    return hashlib.sha256(f"{uid}{code}".encode()).hexdigest()


def _signin_code_hash(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


@dataclass(frozen=True)
class ConsumedSigninCode:
    uid: str
    email: str
    flow_id: Optional[str] = None


class OneTimeCodeManager:
    """Issues and consumes single-use unblock and signin codes.

    Only digests are stored. Consumption deletes the row, so a replayed code
    always fails with the same error as an unknown one.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        self.store = store
        self.settings = settings
        self.random_bytes = random_bytes
        self.logger = get_logger(__name__)

    async def create_unblock_code(self, uid: str) -> str:
        code = "".join(
            secrets.choice(UNBLOCK_CODE_ALPHABET)
            for _ in range(self.settings.unblock_code_length)
        )
        try:
            self.store.upsert_unblock_code(
                UnblockCode(uid=uid, code_hash=_unblock_code_hash(uid, code))
            )
        except ConstraintViolation as exc:
            raise UnknownAccountError() from exc
        return code

    async def consume_unblock_code(self, uid: str, code: str) -> None:
        row = self.store.get_unblock_code(uid)
        if row is None:
            raise InvalidUnblockCodeError()
        if utcnow() - row.created_at >= self.settings.unblock_code_lifetime:
            self.store.delete_unblock_code(uid, row.code_hash)
            raise InvalidUnblockCodeError()
        supplied = _unblock_code_hash(uid, normalize_unblock_code(code))
        if not hmac.compare_digest(row.code_hash, supplied):
            self.logger.warning("unblock_code_mismatch", uid=uid)
            raise InvalidUnblockCodeError()
        # A concurrent consumer may have won the race
        if not self.store.delete_unblock_code(uid, row.code_hash):
            raise InvalidUnblockCodeError()

    async def create_signin_code(self, uid: str, flow_id: Optional[str] = None) -> str:
        for attempt in range(1, self.settings.signin_code_max_attempts + 1):
            raw = self.random_bytes(self.settings.signin_code_size)
            code_hash = _signin_code_hash(raw)
            if self.store.signin_code_exists(code_hash):
                self.logger.info("signin_code_collision", attempt=attempt)
                continue
            try:
                self.store.create_signin_code(
                    SigninCode(code_hash=code_hash, uid=uid, flow_id=flow_id)
                )
            except ConstraintViolation as exc:
                if exc.field == "uid":
                    raise UnknownAccountError() from exc
                self.logger.info("signin_code_collision", attempt=attempt)
                continue
            return raw.hex()
        self.logger.error(
            "signin_code_generation_exhausted",
            attempts=self.settings.signin_code_max_attempts,
        )
        raise StorageError("could not generate a unique signin code")

    async def consume_signin_code(self, code: str) -> ConsumedSigninCode:
        try:
            raw = bytes.fromhex(code or "")
        except ValueError as exc:
            raise InvalidSigninCodeError() from exc
        if len(raw) != self.settings.signin_code_size:
            raise InvalidSigninCodeError()
        row = self.store.pop_signin_code(_signin_code_hash(raw))
        if row is None:
            raise InvalidSigninCodeError()
        if utcnow() - row.created_at >= self.settings.signin_code_lifetime:
            raise InvalidSigninCodeError()
        account = self.store.get_account(row.uid)
        if account is None:
            raise InvalidSigninCodeError()
        return ConsumedSigninCode(uid=row.uid, email=account.email, flow_id=row.flow_id)
