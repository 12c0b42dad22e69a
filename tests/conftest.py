"""
Shared fixtures for the LearnLens API tests.

This module provides:
- A fake psycopg2 connection whose cursor answers queries from scripted rules
- A fake OpenAI client returning canned completions and stream chunks
- Row factories for users and materials
- A Flask test client and a bearer-token helper
"""

import os
from datetime import datetime
from types import SimpleNamespace

import pytest

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("AI_API_KEY", "test-key")

import ai_service  # noqa: E402
import app as app_module  # noqa: E402

NOW = datetime(2026, 1, 15, 9, 30, 0)


# =============================================================================
# Fake database
# =============================================================================


class FakeDB:
    """Answers SQL by the first rule whose fragment occurs in the (whitespace-normalized) statement.

    Rules registered later take priority. A rule's rows may be a list of
    tuples or a callable taking the query params and returning one.
    """

    def __init__(self):
        self.rules: list[tuple[str, object]] = []
        self.executed: list[tuple[str, object]] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def on(self, fragment: str, rows) -> "FakeDB":
        self.rules.insert(0, (" ".join(fragment.split()), rows))
        return self

    def rows_for(self, sql: str, params):
        for fragment, rows in self.rules:
            if fragment in sql:
                return list(rows(params) if callable(rows) else rows)
        return []

    def queries(self, fragment: str) -> list[tuple[str, object]]:
        fragment = " ".join(fragment.split())
        return [(sql, params) for sql, params in self.executed if fragment in sql]


class FakeCursor:
    def __init__(self, db: FakeDB):
        self.db = db
        self._rows: list = []
        self.rowcount = 0

    def execute(self, sql, params=None):
        flat = " ".join(sql.split())
        self.db.executed.append((flat, params))
        self._rows = self.db.rows_for(flat, params)
        self.rowcount = len(self._rows)

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def close(self):
        pass


class FakeConnection:
    def __init__(self, db: FakeDB):
        self.db = db

    def cursor(self):
        return FakeCursor(self.db)

    def commit(self):
        self.db.commits += 1

    def rollback(self):
        self.db.rollbacks += 1

    def close(self):
        self.db.closed += 1


# =============================================================================
# Row factories
# =============================================================================


def make_user_row(
    id: int = 1,
    email: str = "ada@example.com",
    name: str = "Ada",
    preferred_model: str = "gemini-2.5-flash-lite",
    max_tokens: int = 1000,
    max_context: int = 500000,
    custom_api_url: str | None = None,
    custom_api_key: str | None = None,
    custom_model: str | None = None,
) -> tuple:
    return (
        id, email, name, None, preferred_model, max_tokens, max_context,
        custom_api_url, custom_api_key, custom_model, None, None, NOW,
    )


def make_material_row(
    id: int = 10,
    user_id: int = 1,
    title: str = "Photosynthesis",
    description: str | None = "Biology notes",
    content: str | None = "Plants convert light energy into chemical energy stored in glucose.",
    type: str = "text",
    summary: str | None = None,
    glossary: str | None = None,
    flashcards: str | None = None,
    mind_map: str | None = None,
    is_public: bool = False,
) -> tuple:
    return (
        id, user_id, title, description, content, type, summary, glossary, flashcards, mind_map,
        is_public, None, 0, None, NOW, NOW,
    )


def make_message_row(id: int, role: str, content: str) -> tuple:
    return (id, role, content, NOW)


# =============================================================================
# Fake OpenAI client
# =============================================================================


def _stream_chunks(pieces):
    for piece in pieces:
        if isinstance(piece, Exception):
            raise piece
        yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=piece))])


class FakeCompletions:
    """Replays replies in order; the last one repeats. Exceptions are raised.

    A string reply answers a normal call; a list of strings answers a
    streaming call chunk by chunk.
    """

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if kwargs.get("stream"):
            pieces = reply if isinstance(reply, list) else [reply]
            return _stream_chunks(pieces)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


class FakeOpenAI:
    def __init__(self, *replies):
        self.chat = SimpleNamespace(completions=FakeCompletions(replies))

    @property
    def calls(self) -> list[dict]:
        return self.chat.completions.calls


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def db(monkeypatch):
    """Fake database with the default user registered; routes connect to it."""
    fake = FakeDB()
    fake.on("FROM users WHERE id = %s", [make_user_row()])
    monkeypatch.setattr(app_module, "get_connection", lambda: FakeConnection(fake))
    return fake


@pytest.fixture
def fake_ai(monkeypatch):
    """Install a fake default gateway client: fake_ai(reply, ...) -> FakeOpenAI."""
    def install(*replies):
        client = FakeOpenAI(*replies)
        monkeypatch.setattr(ai_service, "_default_client", client)
        return client

    return install


@pytest.fixture
def client():
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def make(user_id: int = 1) -> dict:
        return {"Authorization": f"Bearer {app_module.generate_token(user_id)}"}

    return make
