from __future__ import annotations

import json
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from credstore.logging import get_logger
from credstore.storage.errors import ConstraintViolation
from credstore.storage.models import (
    Account,
    Device,
    EmailRecord,
    SecurityEvent,
    SessionToken,
    SigninCode,
    TOKEN_CLASSES,
    Token,
    TokenKind,
    UnblockCode,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        uid TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        normalized_email TEXT NOT NULL,
        email_code TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verifier_version INTEGER NOT NULL DEFAULT 1,
        verify_hash TEXT,
        auth_salt TEXT,
        ka TEXT,
        wrap_wrap_kb TEXT,
        verifier_set_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        locale TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_email (
        normalized_email TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        uid TEXT NOT NULL REFERENCES account(uid) ON DELETE CASCADE,
        email_code TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_primary BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_email_one_primary
        ON account_email (uid) WHERE is_primary
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        token_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        uid TEXT NOT NULL REFERENCES account(uid) ON DELETE CASCADE,
        auth_key TEXT NOT NULL,
        token_verification_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_uid_kind ON auth_token (uid, kind)",
    """
    CREATE TABLE IF NOT EXISTS device (
        uid TEXT NOT NULL REFERENCES account(uid) ON DELETE CASCADE,
        id TEXT NOT NULL,
        session_token_id TEXT UNIQUE REFERENCES auth_token(token_id) ON DELETE CASCADE,
        name TEXT,
        type TEXT,
        push_callback TEXT,
        push_public_key TEXT,
        push_auth_key TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (uid, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS unblock_code (
        uid TEXT PRIMARY KEY REFERENCES account(uid) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS signin_code (
        code_hash TEXT PRIMARY KEY,
        uid TEXT NOT NULL REFERENCES account(uid) ON DELETE CASCADE,
        flow_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id BIGSERIAL PRIMARY KEY,
        uid TEXT NOT NULL REFERENCES account(uid) ON DELETE CASCADE,
        name TEXT NOT NULL,
        ip_addr TEXT,
        token_id TEXT,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

# Columns stored outside the JSONB payload
_TOKEN_COLUMNS = {"token_id", "auth_key", "uid", "created_at", "token_verification_id"}
# Joined or computed at read time, never persisted
_TOKEN_JOINED = {"email", "email_code", "email_verified", "verifier_set_at", "device_id", "lifetime"}
_DEVICE_COLUMNS = {
    "session_token_id",
    "name",
    "type",
    "push_callback",
    "push_public_key",
    "push_auth_key",
}

_TOKEN_SELECT = """
    SELECT t.*, a.email AS account_email, a.email_code AS account_email_code,
           a.email_verified AS account_email_verified,
           a.verifier_set_at AS account_verifier_set_at, d.id AS device_id
    FROM auth_token t
    LEFT JOIN account a ON a.uid = t.uid
    LEFT JOIN device d ON d.session_token_id = t.token_id
"""


def _payload_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class PostgresStore:
    """Postgres-backed durable store for accounts, tokens, devices and codes."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # accounts
    def create_account(self, account: Account, email: EmailRecord) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (uid, email, normalized_email, email_code, email_verified,
                        verifier_version, verify_hash, auth_salt, ka, wrap_wrap_kb,
                        verifier_set_at, created_at, locale)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.uid,
                        account.email,
                        account.normalized_email,
                        account.email_code,
                        account.email_verified,
                        account.verifier_version,
                        account.verify_hash,
                        account.auth_salt,
                        account.ka,
                        account.wrap_wrap_kb,
                        account.verifier_set_at,
                        account.created_at,
                        account.locale,
                    ),
                )
                self._insert_email(conn, email)
        except errors.UniqueViolation as exc:
            field = "uid" if exc.diag.constraint_name == "account_pkey" else "email"
            raise ConstraintViolation("account already exists", {"field": field})
        return account

    def get_account(self, uid: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE uid = %s", (uid,)).fetchone()
        return Account(**row) if row else None

    def get_account_by_email(self, normalized_email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE normalized_email = %s", (normalized_email,)
            ).fetchone()
        return Account(**row) if row else None

    def update_account(self, uid: str, **fields: Any) -> Optional[Account]:
        if not fields:
            return self.get_account(uid)
        allowed = {f.name for f in dataclass_fields(Account)} - {"uid"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"unknown account fields: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {assignments} WHERE uid = %s RETURNING *",
                (*fields.values(), uid),
            ).fetchone()
        return Account(**row) if row else None

    def delete_account(self, uid: str) -> bool:
        # Emails, tokens, devices, codes and events cascade
        with self._connect() as conn:
            result = conn.execute("DELETE FROM account WHERE uid = %s", (uid,))
            return result.rowcount > 0

    # emails
    def _insert_email(self, conn, record: EmailRecord) -> None:
        conn.execute(
            """
            INSERT INTO account_email (normalized_email, email, uid, email_code,
                is_verified, is_primary, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.normalized_email,
                record.email,
                record.uid,
                record.email_code,
                record.is_verified,
                record.is_primary,
                record.created_at,
            ),
        )

    def create_email(self, record: EmailRecord) -> EmailRecord:
        try:
            with self._connect() as conn:
                self._insert_email(conn, record)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"field": "uid"})
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return record

    def get_email(self, normalized_email: str) -> Optional[EmailRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_email WHERE normalized_email = %s",
                (normalized_email,),
            ).fetchone()
        return EmailRecord(**row) if row else None

    def list_emails(self, uid: str) -> List[EmailRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account_email WHERE uid = %s ORDER BY created_at", (uid,)
            ).fetchall()
        return [EmailRecord(**row) for row in rows]

    def delete_email(self, uid: str, normalized_email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT is_primary FROM account_email WHERE uid = %s AND normalized_email = %s",
                (uid, normalized_email),
            ).fetchone()
            if not row:
                return False
            if row["is_primary"]:
                raise ConstraintViolation("cannot delete primary email", {"field": "email"})
            conn.execute(
                "DELETE FROM account_email WHERE uid = %s AND normalized_email = %s",
                (uid, normalized_email),
            )
        return True

    def set_primary_email(self, uid: str, normalized_email: str) -> bool:
        with self._connect() as conn:
            target = conn.execute(
                """
                SELECT * FROM account_email WHERE uid = %s AND normalized_email = %s
                FOR UPDATE
                """,
                (uid, normalized_email),
            ).fetchone()
            if not target:
                return False
            conn.execute(
                "UPDATE account_email SET is_primary = FALSE WHERE uid = %s AND is_primary",
                (uid,),
            )
            conn.execute(
                "UPDATE account_email SET is_primary = TRUE WHERE normalized_email = %s",
                (normalized_email,),
            )
            conn.execute(
                """
                UPDATE account SET email = %s, normalized_email = %s,
                    email_verified = %s, email_code = %s
                WHERE uid = %s
                """,
                (
                    target["email"],
                    target["normalized_email"],
                    target["is_verified"],
                    target["email_code"],
                    uid,
                ),
            )
        return True

    def mark_email_verified(self, uid: str, normalized_email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account_email SET is_verified = TRUE
                WHERE uid = %s AND normalized_email = %s
                RETURNING is_primary
                """,
                (uid, normalized_email),
            ).fetchone()
            if not row:
                return False
            if row["is_primary"]:
                conn.execute(
                    "UPDATE account SET email_verified = TRUE WHERE uid = %s", (uid,)
                )
        return True

    # tokens
    def _insert_token(self, conn, token: Token) -> None:
        payload = {
            f.name: _payload_value(getattr(token, f.name))
            for f in dataclass_fields(token)
            if f.name not in _TOKEN_COLUMNS and f.name not in _TOKEN_JOINED
        }
        try:
            conn.execute(
                """
                INSERT INTO auth_token (token_id, kind, uid, auth_key,
                    token_verification_id, created_at, payload)
                VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
                """,
                (
                    token.token_id,
                    token.kind.value,
                    token.uid,
                    token.auth_key,
                    getattr(token, "token_verification_id", None),
                    token.created_at,
                    json.dumps(payload),
                ),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"field": "uid"})
        except errors.UniqueViolation:
            raise ConstraintViolation("token id already exists", {"field": "token_id"})

    def create_token(self, token: Token) -> Token:
        with self._connect() as conn:
            self._insert_token(conn, token)
        return self.get_token(token.token_id) or token

    def exchange_forgot_token(self, forgot_token_id: str, reset_token: Token) -> Optional[Token]:
        """Consume a forgot-password token and store ``reset_token`` in its place.

        Returns ``None`` when the forgot-password token was already consumed;
        nothing is written in that case.
        """
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_token WHERE token_id = %s AND kind = %s RETURNING uid",
                (forgot_token_id, TokenKind.PASSWORD_FORGOT.value),
            ).fetchone()
            if not row:
                return None
            self._insert_token(conn, reset_token)
            # Receiving the code proves ownership of the primary email
            conn.execute(
                "UPDATE account_email SET is_verified = TRUE WHERE uid = %s AND is_primary",
                (row["uid"],),
            )
            conn.execute(
                "UPDATE account SET email_verified = TRUE WHERE uid = %s", (row["uid"],)
            )
        return self.get_token(reset_token.token_id) or reset_token

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                _TOKEN_SELECT + " WHERE t.token_id = %s", (token_id,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def list_session_tokens(self, uid: str) -> List[SessionToken]:
        with self._connect() as conn:
            rows = conn.execute(
                _TOKEN_SELECT + " WHERE t.uid = %s AND t.kind = %s ORDER BY t.created_at",
                (uid, TokenKind.SESSION.value),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def update_token(self, token_id: str, **fields: Any) -> bool:
        columns = {k: v for k, v in fields.items() if k in _TOKEN_COLUMNS}
        payload = {
            k: _payload_value(v)
            for k, v in fields.items()
            if k not in _TOKEN_COLUMNS and k not in _TOKEN_JOINED
        }
        assignments = [f"{name} = %s" for name in columns]
        params: List[Any] = list(columns.values())
        if payload:
            assignments.append("payload = payload || %s::jsonb")
            params.append(json.dumps(payload))
        if not assignments:
            return self.get_token(token_id) is not None
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE auth_token SET {', '.join(assignments)} WHERE token_id = %s",
                (*params, token_id),
            )
            return result.rowcount > 0

    def delete_token(self, token_id: str) -> bool:
        # The bound device row cascades
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_token WHERE token_id = %s", (token_id,))
            return result.rowcount > 0

    def delete_account_tokens(self, uid: str) -> int:
        with self._connect() as conn:
            conn.execute("DELETE FROM device WHERE uid = %s", (uid,))
            result = conn.execute("DELETE FROM auth_token WHERE uid = %s", (uid,))
            return result.rowcount

    def clear_token_verification(self, uid: str, token_verification_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_token SET token_verification_id = NULL
                WHERE uid = %s AND token_verification_id = %s
                """,
                (uid, token_verification_id),
            )
            return result.rowcount

    def prune_tokens(self, kind: TokenKind, created_before: datetime) -> int:
        query = "DELETE FROM auth_token t WHERE t.kind = %s AND t.created_at < %s"
        if kind == TokenKind.SESSION:
            query += """
                AND NOT EXISTS (SELECT 1 FROM device d WHERE d.session_token_id = t.token_id)
            """
        with self._connect() as conn:
            result = conn.execute(query, (kind.value, created_before))
            return result.rowcount

    def _row_to_token(self, row: Dict[str, Any]) -> Token:
        kind = TokenKind(row["kind"])
        cls = TOKEN_CLASSES[kind]
        known = {f.name for f in dataclass_fields(cls)}
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        values: Dict[str, Any] = {
            "token_id": row["token_id"],
            "auth_key": row["auth_key"],
            "uid": row["uid"],
            "created_at": row["created_at"],
        }
        if "token_verification_id" in known:
            values["token_verification_id"] = row.get("token_verification_id")
        values.update({k: v for k, v in payload.items() if k in known})
        if isinstance(values.get("last_access_time"), str):
            values["last_access_time"] = datetime.fromisoformat(values["last_access_time"])
        if kind == TokenKind.SESSION:
            values.update(
                email=row.get("account_email"),
                email_code=row.get("account_email_code"),
                email_verified=bool(row.get("account_email_verified")),
                verifier_set_at=row.get("account_verifier_set_at"),
                device_id=row.get("device_id"),
            )
        elif kind == TokenKind.KEY_FETCH:
            values["email_verified"] = bool(row.get("account_email_verified"))
        elif kind == TokenKind.PASSWORD_FORGOT:
            values["email"] = row.get("account_email")
        return cls(**values)

    # devices
    def create_device(self, device: Device) -> Device:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO device (uid, id, session_token_id, name, type,
                        push_callback, push_public_key, push_auth_key, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        device.uid,
                        device.id,
                        device.session_token_id,
                        device.name,
                        device.type,
                        device.push_callback,
                        device.push_public_key,
                        device.push_auth_key,
                        device.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account or session missing", {"field": "uid"})
        except errors.UniqueViolation:
            self._raise_device_conflict(device.session_token_id, device.id)
        return device

    def _raise_device_conflict(self, session_token_id: Optional[str], device_id: str) -> None:
        bound = self.get_device_by_session(session_token_id) if session_token_id else None
        if bound and bound.id != device_id:
            raise ConstraintViolation(
                "session token already bound",
                {"field": "session_token_id", "device_id": bound.id},
            )
        raise ConstraintViolation(
            "device already exists", {"field": "device_id", "device_id": device_id}
        )

    def get_device(self, uid: str, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device WHERE uid = %s AND id = %s", (uid, device_id)
            ).fetchone()
        return Device(**row) if row else None

    def get_device_by_session(self, session_token_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device WHERE session_token_id = %s", (session_token_id,)
            ).fetchone()
        return Device(**row) if row else None

    def list_devices(self, uid: str) -> List[Device]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM device WHERE uid = %s ORDER BY created_at", (uid,)
            ).fetchall()
        return [Device(**row) for row in rows]

    def update_device(self, uid: str, device_id: str, **fields: Any) -> Optional[Device]:
        unknown = set(fields) - _DEVICE_COLUMNS
        if unknown:
            raise ValueError(f"unknown device fields: {sorted(unknown)}")
        if not fields:
            return self.get_device(uid, device_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE device SET {assignments} WHERE uid = %s AND id = %s RETURNING *",
                    (*fields.values(), uid, device_id),
                ).fetchone()
        except errors.UniqueViolation:
            self._raise_device_conflict(fields.get("session_token_id"), device_id)
        return Device(**row) if row else None

    def delete_device(self, uid: str, device_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM device WHERE uid = %s AND id = %s", (uid, device_id)
            )
            return result.rowcount > 0

    # one-time codes
    def upsert_unblock_code(self, code: UnblockCode) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO unblock_code (uid, code_hash, created_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (uid) DO UPDATE
                        SET code_hash = EXCLUDED.code_hash, created_at = EXCLUDED.created_at
                    """,
                    (code.uid, code.code_hash, code.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"field": "uid"})

    def get_unblock_code(self, uid: str) -> Optional[UnblockCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM unblock_code WHERE uid = %s", (uid,)
            ).fetchone()
        return UnblockCode(**row) if row else None

    def delete_unblock_code(self, uid: str, code_hash: Optional[str] = None) -> bool:
        query = "DELETE FROM unblock_code WHERE uid = %s"
        params: tuple = (uid,)
        if code_hash is not None:
            query += " AND code_hash = %s"
            params = (uid, code_hash)
        with self._connect() as conn:
            result = conn.execute(query, params)
            return result.rowcount > 0

    def signin_code_exists(self, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM signin_code WHERE code_hash = %s", (code_hash,)
            ).fetchone()
        return row is not None

    def create_signin_code(self, code: SigninCode) -> SigninCode:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO signin_code (code_hash, uid, flow_id, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (code.code_hash, code.uid, code.flow_id, code.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"field": "uid"})
        except errors.UniqueViolation:
            raise ConstraintViolation("signin code already exists", {"field": "code"})
        return code

    def pop_signin_code(self, code_hash: str) -> Optional[SigninCode]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM signin_code WHERE code_hash = %s RETURNING *", (code_hash,)
            ).fetchone()
        return SigninCode(**row) if row else None

    def prune_unblock_codes(self, created_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM unblock_code WHERE created_at < %s", (created_before,)
            )
            return result.rowcount

    def prune_signin_codes(self, created_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM signin_code WHERE created_at < %s", (created_before,)
            )
            return result.rowcount

    # security events
    def add_security_event(self, event: SecurityEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (uid, name, ip_addr, token_id, verified, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    event.uid,
                    event.name,
                    event.ip_addr,
                    event.token_id,
                    event.verified,
                    event.created_at,
                ),
            )

    def list_security_events(self, uid: str, ip_addr: Optional[str] = None) -> List[SecurityEvent]:
        query = "SELECT uid, name, ip_addr, token_id, verified, created_at FROM security_event WHERE uid = %s"
        params: tuple = (uid,)
        if ip_addr is not None:
            query += " AND ip_addr = %s"
            params = (uid, ip_addr)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at DESC, id DESC", params).fetchall()
        return [SecurityEvent(**row) for row in rows]
