"""
Shared fixtures: an in-memory Supabase stand-in and a TestClient wired to it.

FakeSupabase mimics the slice of the PostgREST query builder and the
Supabase Auth API that the app uses, including upsert with
ignore_duplicates and cascade deletes from chats to messages.
"""

import itertools
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from supabase import AuthApiError, AuthRetryableError

from app.config import Settings, get_settings
from app.logger import ROOT_LOGGER_NAME
from main import app, get_auth_supabase, get_llm, get_supabase

MEMBER_ID = "5b0e6c1a-2f4d-4c8e-9a31-7d2f6b8e4c10"
ADMIN_ID = "c7a4e912-8b3f-4d6a-b5e0-1f9c2d7a6e33"

CASCADES = {"chats": [("messages", "chat_id")]}
GENERATED_DEFAULTS = {
    "users": {
        "role": "user",
        "plan": "FREE",
        "onboarding_completed": False,
        "messages_used_today": 0,
    },
    "training_splits": {"is_active": True},
    "knowledge_items": {"status": "COMPLETED"},
}


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, store: "FakeSupabase", table: str):
        self.store = store
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.filters = []
        self.payload = None
        self.order_by = None
        self.row_limit = None
        self.single = False
        self.on_conflict = None
        self.ignore_duplicates = False

    def select(self, columns="*"):
        self.columns = columns
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    def maybe_single(self):
        self.single = True
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def upsert(self, payload, on_conflict="id", ignore_duplicates=False):
        self.op, self.payload = "upsert", payload
        self.on_conflict, self.ignore_duplicates = on_conflict, ignore_duplicates
        return self

    def update(self, fields):
        self.op, self.payload = "update", fields
        return self

    def delete(self):
        self.op = "delete"
        return self

    def execute(self):
        return self.store.execute(self)


class FakeAuth:
    """Supabase Auth: bearer tokens and OAuth codes mapped to users."""

    def __init__(self):
        self.tokens = {}
        self.codes = {}
        self.unavailable = False
        self.get_user_calls = 0

    def add_token(self, token, user_id, email=None):
        self.tokens[token] = SimpleNamespace(id=user_id, email=email)

    def add_code(self, code, user_id, email=None):
        self.codes[code] = SimpleNamespace(id=user_id, email=email)

    def get_user(self, jwt=None):
        self.get_user_calls += 1
        if self.unavailable:
            raise AuthRetryableError("Connection refused", 0)
        user = self.tokens.get(jwt)
        if user is None:
            raise AuthApiError("invalid JWT: unable to parse or verify signature", 403, "bad_jwt")
        return SimpleNamespace(user=user)

    def exchange_code_for_session(self, params):
        user = self.codes.get(params.get("auth_code"))
        if user is None:
            raise AuthApiError(
                "invalid flow state, no valid flow state found", 404, "flow_state_not_found"
            )
        session = SimpleNamespace(
            access_token=f"access-{user.id}",
            refresh_token=f"refresh-{user.id}",
            expires_in=3600,
            user=user,
        )
        return SimpleNamespace(user=user, session=session)


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.auth = FakeAuth()
        self.failing_tables = set()
        self._lock = threading.Lock()
        self._clock = itertools.count()
        self._epoch = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, table):
        return self.tables.setdefault(table, [])

    def seed(self, table, **row):
        with self._lock:
            stored = self._new_row(table, row)
            self.rows(table).append(stored)
        return dict(stored)

    def _timestamp(self):
        return (self._epoch + timedelta(seconds=next(self._clock))).isoformat()

    def _new_row(self, table, row):
        stored = {**GENERATED_DEFAULTS.get(table, {}), **row}
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", self._timestamp())
        if table == "users":
            stored.setdefault("updated_at", stored["created_at"])
        return stored

    def _matches(self, row, filters):
        return all(row.get(column) == value for column, value in filters)

    def _project(self, row, columns):
        if columns.strip() == "*":
            return dict(row)
        wanted = [column.strip() for column in columns.split(",")]
        return {column: row.get(column) for column in wanted}

    def execute(self, query: FakeQuery):
        if query.table in self.failing_tables:
            raise RuntimeError(f"relation {query.table} is unavailable")
        with self._lock:
            handler = getattr(self, f"_{query.op}")
            return handler(query)

    def _select(self, query):
        found = [row for row in self.rows(query.table) if self._matches(row, query.filters)]
        if query.order_by:
            column, desc = query.order_by
            found.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
        if query.row_limit is not None:
            found = found[: query.row_limit]
        found = [self._project(row, query.columns) for row in found]
        if query.single:
            # maybe_single() on an empty result hands back None
            return FakeResponse(found[0]) if found else None
        return FakeResponse(found)

    def _insert(self, query):
        payload = query.payload if isinstance(query.payload, list) else [query.payload]
        created = [self._new_row(query.table, row) for row in payload]
        self.rows(query.table).extend(created)
        return FakeResponse([dict(row) for row in created])

    def _upsert(self, query):
        payload = query.payload if isinstance(query.payload, list) else [query.payload]
        written = []
        for row in payload:
            key = row.get(query.on_conflict)
            existing = next(
                (
                    stored
                    for stored in self.rows(query.table)
                    if stored.get(query.on_conflict) == key
                ),
                None,
            )
            if existing is None:
                stored = self._new_row(query.table, row)
                self.rows(query.table).append(stored)
                written.append(dict(stored))
            elif not query.ignore_duplicates:
                existing.update(row)
                written.append(dict(existing))
        return FakeResponse(written)

    def _update(self, query):
        updated = []
        for row in self.rows(query.table):
            if self._matches(row, query.filters):
                row.update(query.payload)
                updated.append(dict(row))
        return FakeResponse(updated)

    def _delete(self, query):
        kept, deleted = [], []
        for row in self.rows(query.table):
            (deleted if self._matches(row, query.filters) else kept).append(row)
        self.tables[query.table] = kept
        for child_table, foreign_key in CASCADES.get(query.table, []):
            ids = {row["id"] for row in deleted}
            self.tables[child_table] = [
                row for row in self.rows(child_table) if row.get(foreign_key) not in ids
            ]
        return FakeResponse([dict(row) for row in deleted])


class FakeLLM:
    """Records conversations sent to the coach and returns a canned reply."""

    def __init__(self, reply="Run 3 sets of 8 at RIR 2 and add 2.5 kg next week."):
        self.reply = reply
        self.calls = []
        self.error = None

    def __call__(self, conversation, user_id=None):
        self.calls.append((list(conversation), user_id))
        if self.error is not None:
            raise self.error
        return self.reply


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def fake_sb():
    return FakeSupabase()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = {
            "SUPABASE_URL": "https://project.supabase.co",
            "SUPABASE_ANON_KEY": "anon-key",
            "SITE_URL": "",
            "COOKIE_SECURE": False,
            "UPLOAD_DIR": str(tmp_path / "uploads"),
            **overrides,
        }
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def make_client(fake_sb, fake_llm, make_settings):
    """Build a TestClient against the real app with storage, auth and LLM faked."""

    def _make(**settings_overrides):
        settings = make_settings(**settings_overrides)
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_supabase] = lambda: fake_sb
        app.dependency_overrides[get_auth_supabase] = lambda: fake_sb
        app.dependency_overrides[get_llm] = lambda: fake_llm
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def member(fake_sb):
    """Existing onboarded member signed in with token 'member-token'."""
    fake_sb.auth.add_token("member-token", MEMBER_ID, "member@example.com")
    return fake_sb.seed(
        "users", id=MEMBER_ID, email="member@example.com", onboarding_completed=True
    )


@pytest.fixture
def admin(fake_sb):
    """Admin signed in with token 'admin-token'."""
    fake_sb.auth.add_token("admin-token", ADMIN_ID, "coach@example.com")
    return fake_sb.seed(
        "users", id=ADMIN_ID, email="coach@example.com", role="admin", onboarding_completed=True
    )


@pytest.fixture
def app_log(caplog):
    """Messages logged under the app logger during the test."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.addHandler(caplog.handler)
    caplog.handler.setLevel(logging.INFO)
    yield lambda: [record.getMessage() for record in caplog.records]
    root.removeHandler(caplog.handler)


@pytest.fixture
def audit_log(app_log):
    """Messages of AUDIT lines emitted under the app logger during the test."""
    return lambda: [message for message in app_log() if message.startswith("AUDIT:")]
