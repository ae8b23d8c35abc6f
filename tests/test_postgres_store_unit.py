from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from phoneauth.storage.errors import ConstraintViolation
from phoneauth.storage.models import Gender, TokenType
from phoneauth.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if not self.responses:
            return FakeCursor()
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(list(responses))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*responses) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*responses)
    store.dsn = "postgresql://test"
    return store


def _executed(store):
    return store.pool.conn.executed


def _token_row(**overrides):
    row = {
        "id": "tok-1",
        "auth_id": "auth-1",
        "token": "n" * 24,
        "type": "refresh_token",
        "device_info": None,
        "expires_at": (NOW + timedelta(days=30)).replace(tzinfo=None),
        "revoked_at": None,
        "last_used_at": NOW,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


class TestOTPSql:
    def test_upsert_is_a_single_conditional_write(self):
        row = {
            "phone": "01712345678",
            "code": "123456",
            "attempts": 0,
            "expires_at": NOW + timedelta(minutes=5),
            "created_at": NOW,
        }
        store = _store(FakeCursor(row))
        cutoff = NOW - timedelta(minutes=1)
        record = store.upsert_otp("01712345678", "123456", row["expires_at"], cooldown_since=cutoff)

        assert record.code == "123456"
        sql, params = _executed(store)[0]
        assert "ON CONFLICT (phone) DO UPDATE" in sql
        assert "WHERE otps.created_at <= %s" in sql
        assert params[-1] == cutoff

    def test_upsert_blocked_returns_none(self):
        store = _store(FakeCursor(None))
        assert (
            store.upsert_otp("01712345678", "123456", NOW, cooldown_since=NOW) is None
        )

    def test_increment_returns_new_count(self):
        store = _store(FakeCursor({"attempts": 2}))
        assert store.increment_otp_attempts("01712345678") == 2
        assert "attempts = attempts + 1" in _executed(store)[0][0]

    def test_delete_reports_rowcount(self):
        assert _store(FakeCursor(rowcount=1)).delete_otp("01712345678") is True
        assert _store(FakeCursor(rowcount=0)).delete_otp("01712345678") is False


class TestIdentitySql:
    def test_get_or_create_inserts_first(self):
        store = _store(FakeCursor({"id": "auth-1", "phone": "01712345678", "created_at": NOW}))
        record, created = store.get_or_create_auth("01712345678")
        assert created is True
        assert record.id == "auth-1"
        assert "ON CONFLICT (phone) DO NOTHING" in _executed(store)[0][0]

    def test_get_or_create_falls_back_to_select(self):
        store = _store(
            FakeCursor(None),
            FakeCursor({"id": "auth-1", "phone": "01712345678", "created_at": NOW}),
        )
        record, created = store.get_or_create_auth("01712345678")
        assert created is False
        assert record.id == "auth-1"
        assert _executed(store)[1][0].startswith("SELECT * FROM auth WHERE phone")


class TestTokenSql:
    def test_rotate_guards_on_old_token_and_state(self):
        store = _store(FakeCursor(_token_row()))
        rotated = store.rotate_token("o" * 24, "n" * 24, NOW + timedelta(days=30), now=NOW)
        assert rotated.token == "n" * 24
        assert rotated.type == TokenType.REFRESH
        assert rotated.expires_at.tzinfo is not None
        sql, params = _executed(store)[0]
        assert "WHERE token = %s AND type = 'refresh_token' AND revoked_at IS NULL AND expires_at > %s" in sql
        assert params == ("n" * 24, NOW + timedelta(days=30), NOW, "o" * 24, NOW)

    def test_rotate_miss_returns_none(self):
        store = _store(FakeCursor(None))
        assert store.rotate_token("o" * 24, "n" * 24, NOW, now=NOW) is None

    def test_revoke_only_active_rows(self):
        store = _store(FakeCursor(rowcount=1))
        assert store.revoke_token("t" * 24, TokenType.SESSION, now=NOW) is True
        sql, params = _executed(store)[0]
        assert "revoked_at IS NULL" in sql
        assert params == (NOW, "t" * 24, "session")

    def test_create_token_maps_missing_owner(self):
        store = _store(errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation) as exc:
            store.create_token("auth-x", TokenType.SESSION, "t" * 24, NOW)
        assert exc.value.field == "auth_id"


class TestProfileSql:
    def test_create_profile_row_mapping(self):
        row = {
            "id": "auth-1",
            "name": "Nusrat",
            "gender": "female",
            "birth_year": 1996,
            "email": None,
            "created_at": NOW,
            "updated_at": NOW,
        }
        store = _store(FakeCursor(row))
        profile = store.create_profile("auth-1", name="Nusrat", gender=Gender.FEMALE, birth_year=1996)
        assert profile.gender == Gender.FEMALE
        assert _executed(store)[0][1] == ("auth-1", "Nusrat", "female", 1996, None)

    def test_duplicate_profile_maps_to_constraint_violation(self):
        store = _store(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation) as exc:
            store.create_profile("auth-1", name="N", gender=Gender.MALE, birth_year=1990)
        assert exc.value.field == "id"
