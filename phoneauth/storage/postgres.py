from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from phoneauth.logging import get_logger
from phoneauth.service.auth_utils import as_utc
from phoneauth.storage.errors import ConstraintViolation
from phoneauth.storage.models import (
    AuthRecord,
    Gender,
    OTPRecord,
    Profile,
    Token,
    TokenType,
)

logger = get_logger(__name__)

# One pool per DSN, shared by every store built against it
_pools: Dict[str, ConnectionPool] = {}
_pools_lock = threading.Lock()


def get_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> ConnectionPool:
    """Return the cached pool for ``dsn``, opening it on first use."""
    pool = _pools.get(dsn)
    if pool is not None:
        return pool
    with _pools_lock:
        pool = _pools.get(dsn)
        if pool is None:
            pool = ConnectionPool(
                dsn,
                min_size=min_size,
                max_size=max_size,
                kwargs={"row_factory": dict_row, "autocommit": False},
            )
            _pools[dsn] = pool
            logger.info("db_pool_opened", min_size=min_size, max_size=max_size)
        return pool


def close_pools() -> None:
    with _pools_lock:
        for pool in _pools.values():
            pool.close()
        _pools.clear()


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS auth (
        id TEXT PRIMARY KEY,
        phone TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY REFERENCES auth(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        gender TEXT NOT NULL CHECK (gender IN ('male', 'female')),
        birth_year INTEGER NOT NULL,
        email TEXT UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otps (
        phone TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tokens (
        id TEXT PRIMARY KEY,
        auth_id TEXT NOT NULL REFERENCES auth(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        type TEXT NOT NULL CHECK (type IN ('refresh_token', 'session')),
        device_info TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        last_used_at TIMESTAMPTZ DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS tokens_auth_type_idx ON tokens (auth_id, type)",
]


class PostgresStore:
    """Credential store backed by Postgres.

    Single-row-per-key invariants are enforced in SQL: the OTP cooldown is a
    conditional ``ON CONFLICT ... DO UPDATE ... WHERE``, identity creation is
    ``ON CONFLICT DO NOTHING``, and refresh rotation is an ``UPDATE`` guarded
    on the old token string.
    """

    def __init__(
        self, dsn: str, *, min_size: int = 1, max_size: int = 10, ensure_schema: bool = True
    ) -> None:
        self.dsn = dsn
        self.logger = logger
        self.pool = get_pool(dsn, min_size=min_size, max_size=max_size)
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # otp
    def get_otp(self, phone: str) -> Optional[OTPRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otps WHERE phone = %s", (phone,)
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def upsert_otp(
        self,
        phone: str,
        code: str,
        expires_at: datetime,
        *,
        cooldown_since: datetime,
    ) -> Optional[OTPRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otps (phone, code, attempts, expires_at, created_at)
                VALUES (%s, %s, 0, %s, now())
                ON CONFLICT (phone) DO UPDATE
                SET code = EXCLUDED.code,
                    attempts = 0,
                    expires_at = EXCLUDED.expires_at,
                    created_at = EXCLUDED.created_at
                WHERE otps.created_at <= %s
                RETURNING *
                """,
                (phone, code, expires_at, cooldown_since),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def increment_otp_attempts(self, phone: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otps SET attempts = attempts + 1 WHERE phone = %s RETURNING attempts",
                (phone,),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def delete_otp(self, phone: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM otps WHERE phone = %s", (phone,))
            return result.rowcount > 0

    # identities
    def get_auth(self, auth_id: str) -> Optional[AuthRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth WHERE id = %s", (auth_id,)).fetchone()
        return self._auth_from_row(row) if row else None

    def get_auth_by_phone(self, phone: str) -> Optional[AuthRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth WHERE phone = %s", (phone,)
            ).fetchone()
        return self._auth_from_row(row) if row else None

    def get_or_create_auth(self, phone: str) -> tuple[AuthRecord, bool]:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth (id, phone) VALUES (%s, %s)
                ON CONFLICT (phone) DO NOTHING
                RETURNING *
                """,
                (str(uuid.uuid4()), phone),
            ).fetchone()
            if row:
                return self._auth_from_row(row), True
            row = conn.execute(
                "SELECT * FROM auth WHERE phone = %s", (phone,)
            ).fetchone()
        return self._auth_from_row(row), False

    def delete_auth(self, auth_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth WHERE id = %s", (auth_id,))
            return result.rowcount > 0

    # tokens
    def create_token(
        self,
        auth_id: str,
        token_type: TokenType,
        token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
    ) -> Token:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tokens (id, auth_id, token, type, device_info, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        auth_id,
                        token,
                        TokenType(token_type).value,
                        device_info,
                        expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token owner missing", field="auth_id")
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", field="token")
        return self._token_from_row(row)

    def get_token(self, token: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tokens WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def rotate_token(
        self, old_token: str, new_token: str, expires_at: datetime, *, now: datetime
    ) -> Optional[Token]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE tokens
                    SET token = %s, expires_at = %s, last_used_at = %s
                    WHERE token = %s
                      AND type = 'refresh_token'
                      AND revoked_at IS NULL
                      AND expires_at > %s
                    RETURNING *
                    """,
                    (new_token, expires_at, now, old_token, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", field="token")
        return self._token_from_row(row) if row else None

    def revoke_token(
        self, token: str, token_type: TokenType, *, now: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE tokens SET revoked_at = %s
                WHERE token = %s AND type = %s AND revoked_at IS NULL
                """,
                (now, token, TokenType(token_type).value),
            )
            return result.rowcount > 0

    def touch_token(self, token: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE tokens SET last_used_at = %s WHERE token = %s", (now, token)
            )

    # profiles
    def get_profile(self, auth_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (auth_id,)).fetchone()
        return self._profile_from_row(row) if row else None

    def create_profile(
        self,
        auth_id: str,
        *,
        name: str,
        gender: Gender,
        birth_year: int,
        email: Optional[str] = None,
    ) -> Profile:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, name, gender, birth_year, email)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (auth_id, name, Gender(gender).value, birth_year, email),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("profile identity missing", field="id")
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if "email" in constraint:
                raise ConstraintViolation("email already exists", field="email")
            raise ConstraintViolation("profile already exists", field="id")
        return self._profile_from_row(row)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        close_pools()

    # row mapping
    @staticmethod
    def _auth_from_row(row: Dict[str, Any]) -> AuthRecord:
        return AuthRecord(
            id=str(row["id"]),
            phone=row["phone"],
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OTPRecord:
        return OTPRecord(
            phone=row["phone"],
            code=row["code"],
            attempts=int(row.get("attempts") or 0),
            expires_at=as_utc(row["expires_at"]),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> Token:
        revoked_at = row.get("revoked_at")
        last_used_at = row.get("last_used_at")
        return Token(
            id=str(row["id"]),
            auth_id=str(row["auth_id"]),
            token=row["token"],
            type=TokenType(row["type"]),
            device_info=row.get("device_info"),
            expires_at=as_utc(row["expires_at"]),
            revoked_at=as_utc(revoked_at) if revoked_at else None,
            last_used_at=as_utc(last_used_at) if last_used_at else None,
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _profile_from_row(row: Dict[str, Any]) -> Profile:
        return Profile(
            id=str(row["id"]),
            name=row["name"],
            gender=Gender(row["gender"]),
            birth_year=int(row["birth_year"]),
            email=row.get("email"),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )
