from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

import pytest
from psycopg import errors

from staykey.storage.errors import ConcurrencyConflict, ConstraintViolation
from staykey.storage.models import RefreshRecord, SecurityEventType, utcnow
from staykey.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records executed SQL and replays queued results in order."""

    def __init__(self, results=None, raise_on=None):
        self.executed = []
        self.results = list(results or [])
        self.raise_on = raise_on or {}
        self.transactions = 0
        self.rolled_back = False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        for fragment, exc in self.raise_on.items():
            if fragment in sql:
                raise exc
        rows = self.results.pop(0) if self.results else []
        return FakeResult(rows)

    @contextmanager
    def transaction(self):
        self.transactions += 1
        try:
            yield
        except Exception:
            self.rolled_back = True
            raise

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _store(tmp_path: Path, conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.fs_root = tmp_path
    store._connect = lambda: conn
    return store


def _record(**overrides) -> RefreshRecord:
    now = utcnow()
    values = dict(
        token_hash="f" * 64,
        jwt_id="jti-1",
        user_id="42",
        issued_at=now,
        expires_at=now + timedelta(days=7),
        created_by_ip="127.0.0.1",
    )
    values.update(overrides)
    return RefreshRecord.new(**values)


def _row(record: RefreshRecord, **overrides) -> dict:
    row = {
        "id": record.id,
        "token_hash": record.token_hash,
        "jwt_id": record.jwt_id,
        "user_id": record.user_id,
        "issued_at": record.issued_at,
        "expires_at": record.expires_at,
        "created_by_ip": record.created_by_ip,
        "created_by_user_agent": record.created_by_user_agent,
        "is_revoked": record.is_revoked,
        "revoked_at": record.revoked_at,
        "revoked_by_ip": record.revoked_by_ip,
        "revoked_reason": record.revoked_reason,
        "replaced_by": record.replaced_by,
    }
    row.update(overrides)
    return row


def test_postgres_store_never_touches_pool_when_stubbed(tmp_path: Path):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    with pytest.raises(AssertionError):
        store.get_refresh_record("missing")


def test_rotate_claims_old_row_then_inserts_successor(tmp_path: Path):
    old = _record()
    new = _record(token_hash="e" * 64, jwt_id="jti-2")
    conn = FakeConnection(results=[[{"id": old.id}], [], []])
    store = _store(tmp_path, conn)

    result = store.rotate_refresh_record(
        old.id, new, revoked_at=utcnow(), revoked_by_ip="10.0.0.1"
    )

    assert result is new
    assert conn.transactions == 1
    claim_sql, claim_params = conn.executed[0]
    assert "WHERE id = %s AND is_revoked = FALSE" in claim_sql
    assert claim_params[2] == "rotated"
    assert claim_params[3] == old.id
    assert conn.executed[1][0].startswith("INSERT INTO refresh_token")
    assert conn.executed[2][1] == (new.id, old.id)


def test_rotate_lost_race_raises_conflict(tmp_path: Path):
    old = _record()
    conn = FakeConnection(results=[[]])
    store = _store(tmp_path, conn)

    with pytest.raises(ConcurrencyConflict) as exc_info:
        store.rotate_refresh_record(
            old.id, _record(token_hash="e" * 64), revoked_at=utcnow(), revoked_by_ip="10.0.0.1"
        )

    assert exc_info.value.record_id == old.id
    assert conn.rolled_back is True
    # The successor is never inserted.
    assert len(conn.executed) == 1


def test_create_refresh_record_duplicate_hash(tmp_path: Path):
    conn = FakeConnection(raise_on={"INSERT INTO refresh_token": errors.UniqueViolation()})
    store = _store(tmp_path, conn)
    with pytest.raises(ConstraintViolation):
        store.create_refresh_record(_record())


def test_create_refresh_record_unknown_user(tmp_path: Path):
    conn = FakeConnection(
        raise_on={"INSERT INTO refresh_token": errors.ForeignKeyViolation()}
    )
    store = _store(tmp_path, conn)
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_refresh_record(_record(user_id="ghost"))
    assert exc_info.value.detail == {"user_id": "ghost"}


def test_find_refresh_record_matches_all_three_columns(tmp_path: Path):
    record = _record()
    conn = FakeConnection(results=[[_row(record)]])
    store = _store(tmp_path, conn)

    found = store.find_refresh_record(record.token_hash, "42", "jti-1")

    sql, params = conn.executed[0]
    assert "token_hash = %s AND user_id = %s AND jwt_id = %s" in sql
    assert params == (record.token_hash, "42", "jti-1")
    assert found.id == record.id
    assert found.is_revoked is False


def test_revoke_refresh_record_reports_whether_flipped(tmp_path: Path):
    conn = FakeConnection(results=[[{"id": "r1"}], []])
    store = _store(tmp_path, conn)
    kwargs = dict(revoked_at=utcnow(), revoked_by_ip="10.0.0.1", reason="explicit")

    assert store.revoke_refresh_record("r1", **kwargs) is True
    assert store.revoke_refresh_record("r1", **kwargs) is False


def test_revoke_token_chain_uses_recursive_walk(tmp_path: Path):
    revoked = _record(token_hash="d" * 64)
    conn = FakeConnection(
        results=[[_row(revoked, is_revoked=True, revoked_reason="reuse_detected")]]
    )
    store = _store(tmp_path, conn)

    rows = store.revoke_token_chain(
        "root", revoked_at=utcnow(), revoked_by_ip="10.0.0.1", reason="reuse_detected"
    )

    sql, params = conn.executed[0]
    assert sql.startswith("WITH RECURSIVE chain")
    assert params[0] == "root"
    assert [r.revoked_reason for r in rows] == ["reuse_detected"]


def test_list_security_events_maps_rows(tmp_path: Path):
    now = utcnow()
    conn = FakeConnection(
        results=[
            [
                {
                    "id": "ev-1",
                    "user_id": "42",
                    "event_type": "TokenRefresh",
                    "ip_addr": "203.0.113.1",
                    "created_at": now,
                    "token_id": "r2",
                    "user_agent": None,
                    "detail": "rotated from r1",
                }
            ]
        ]
    )
    store = _store(tmp_path, conn)

    events = store.list_security_events("42", limit=5)

    assert conn.executed[0][1] == ("42", 5)
    assert events[0].event_type == SecurityEventType.TOKEN_REFRESH
    assert events[0].token_id == "r2"
