from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from ssocenter.logging import get_logger
from ssocenter.storage.errors import ConstraintViolation
from ssocenter.storage.models import Token, TokenKind
from ssocenter.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    """Records statements and answers from a queue of scripted results."""

    def __init__(self, results=None, fail_on=None):
        self.results = list(results or [])
        self.fail_on = fail_on
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.fail_on and self.fail_on[0] in sql:
            raise self.fail_on[1]
        if self.results:
            return self.results.pop(0)
        return FakeCursor()

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.logger = get_logger(__name__)
    return store


NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _row(**overrides):
    row = {
        "value": "code-1",
        "user_id": "42",
        "kind": "AuthorizationCode",
        "client_id": "c1",
        "scope": "default",
        "issued_at": NOW - timedelta(minutes=1),
        "expires_at": NOW + timedelta(minutes=4),
        "revoked": True,
        "revoked_at": NOW,
    }
    row.update(overrides)
    return row


def _successor(value, kind):
    return Token.new(
        value,
        user_id="42",
        kind=kind,
        client_id="c1",
        scope="default",
        ttl=timedelta(hours=1),
        now=NOW,
    )


class TestConsumeToken:
    def test_revocation_predicate_is_a_single_update(self):
        conn = FakeConnection([FakeCursor(_row())])
        store = _store(conn)

        consumed = store.consume_token(
            "code-1", TokenKind.AUTHORIZATION_CODE, client_id="c1", now=NOW
        )

        assert consumed.value == "code-1"
        assert consumed.kind is TokenKind.AUTHORIZATION_CODE
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE auth_token SET revoked = TRUE")
        assert "revoked = FALSE" in sql
        assert "expires_at > %s" in sql
        assert "RETURNING *" in sql
        assert params == (NOW, "code-1", "AuthorizationCode", "c1", NOW)
        assert conn.transactions == 1

    def test_no_row_means_not_consumed(self):
        conn = FakeConnection([FakeCursor(None)])
        issued = []

        result = _store(conn).consume_token(
            "gone",
            TokenKind.REFRESH_TOKEN,
            client_id="c1",
            now=NOW,
            issue=lambda parent: issued.append(parent) or [],
        )

        assert result is None
        assert issued == []
        assert len(conn.statements) == 1

    def test_successors_inserted_in_same_transaction(self):
        conn = FakeConnection([FakeCursor(_row())])
        successors = [
            _successor("at-1", TokenKind.ACCESS_TOKEN),
            _successor("rt-1", TokenKind.REFRESH_TOKEN),
        ]

        _store(conn).consume_token(
            "code-1",
            TokenKind.AUTHORIZATION_CODE,
            client_id="c1",
            now=NOW,
            issue=lambda parent: successors,
        )

        inserts = [s for s in conn.statements if s[0].startswith("INSERT INTO auth_token")]
        assert [params[0] for _, params in inserts] == ["at-1", "rt-1"]
        assert [params[2] for _, params in inserts] == ["AccessToken", "RefreshToken"]
        assert conn.transactions == 1

    def test_duplicate_successor_maps_to_constraint_violation(self):
        conn = FakeConnection(
            [FakeCursor(_row())],
            fail_on=("INSERT INTO auth_token", errors.UniqueViolation("duplicate key")),
        )

        with pytest.raises(ConstraintViolation):
            _store(conn).consume_token(
                "code-1",
                TokenKind.AUTHORIZATION_CODE,
                client_id="c1",
                now=NOW,
                issue=lambda parent: [_successor("at-1", TokenKind.ACCESS_TOKEN)],
            )


class TestTokens:
    def test_insert_duplicate_maps_to_constraint_violation(self):
        conn = FakeConnection(
            fail_on=("INSERT INTO auth_token", errors.UniqueViolation("duplicate key"))
        )
        with pytest.raises(ConstraintViolation):
            _store(conn).insert_token(_successor("at-1", TokenKind.ACCESS_TOKEN))

    def test_naive_timestamps_are_read_as_utc(self):
        naive = _row(
            issued_at=datetime(2026, 1, 1, 11, 59),
            expires_at=datetime(2026, 1, 1, 12, 4),
            revoked=False,
            revoked_at=None,
        )
        token = _store(FakeConnection([FakeCursor(naive)])).get_token("code-1")

        assert token.expires_at.tzinfo is timezone.utc
        assert token.revoked is False
        assert token.revoked_at is None

    def test_revoke_unknown_token(self):
        conn = FakeConnection([FakeCursor(None)])
        assert _store(conn).revoke_token("nope", now=NOW) is False
        assert "COALESCE(revoked_at" in conn.statements[0][0]


class TestSchemaVerification:
    def test_missing_tables_are_reported(self):
        results = [FakeCursor({"oid": 1})] * 4 + [FakeCursor({"oid": None})] * 2
        store = _store(FakeConnection(results))

        with pytest.raises(RuntimeError) as excinfo:
            store._verify_required_schema()

        assert "auth_token" in str(excinfo.value)
        assert "oauth_client" in str(excinfo.value)

    def test_complete_schema_passes(self):
        store = _store(FakeConnection([FakeCursor({"oid": 1})] * 6))
        store._verify_required_schema()


def test_roles_query_filters_inactive():
    conn = FakeConnection([FakeCursor({"name": "admin"})])
    assert _store(conn).get_user_roles("42") == ["admin"]
    assert "r.is_active = TRUE" in conn.statements[0][0]


def test_duplicate_insert_is_logged():
    events = []

    class RecordingLogger:
        def warning(self, event, **kwargs):
            events.append((event, kwargs))

    store = _store(
        FakeConnection(
            fail_on=("INSERT INTO auth_token", errors.UniqueViolation("duplicate key"))
        )
    )
    store.logger = RecordingLogger()

    with pytest.raises(ConstraintViolation):
        store.insert_token(_successor("at-1", TokenKind.ACCESS_TOKEN))

    assert events == [("token_value_collision", {"token_kind": "AccessToken"})]
