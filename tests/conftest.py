"""Shared fixtures: temporary SQLite database, store, fake sinks, API client."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app.batch import BatchDriver
from app.config import Settings
from app.engine import UpsertEngine
from app.main import create_app
from app.notifier import ChangeNotifier
from app.schemas import MessageInput
from app.storage import Database, MessageStore

CONTACT_ID = "15550001111"


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def publish(self, event_name: str, payload) -> None:
        self.events.append((event_name, payload))


class FailingSink:
    def publish(self, event_name: str, payload) -> None:
        raise ConnectionError("sink unavailable")


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def database(database_url):
    database = Database(database_url)
    database.open()
    yield database
    database.close()


@pytest.fixture
def db(database):
    with database.session() as session:
        yield session


@pytest.fixture
def store(db) -> MessageStore:
    return MessageStore(db)


@pytest.fixture
def engine(store) -> UpsertEngine:
    return UpsertEngine(store)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier(sink) -> ChangeNotifier:
    return ChangeNotifier(sink)


@pytest.fixture
def driver(engine, notifier) -> BatchDriver:
    return BatchDriver(engine, notifier)


@pytest.fixture
def make_input():
    def _make(message_id="wamid.1", **overrides) -> MessageInput:
        fields = {
            "conversation_id": CONTACT_ID,
            "message_id": message_id,
            "body": "hello",
            "created_at": datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
            "sender_display_name": "Alice",
        }
        fields.update(overrides)
        return MessageInput(**fields)

    return _make


@pytest.fixture
def wa_message():
    def _make(message_id="wamid.1", body="hello", timestamp="1700000000", **extra) -> dict:
        message = {
            "from": CONTACT_ID,
            "id": message_id,
            "timestamp": timestamp,
            "type": "text",
            "text": {"body": body},
        }
        message.update(extra)
        return message

    return _make


def _contacts(name: str) -> list[dict]:
    return [{"wa_id": CONTACT_ID, "profile": {"name": name}}]


@pytest.fixture
def nested_payload():
    """Cloud API style envelope: entry[].changes[].value."""

    def _make(messages=(), statuses=(), name="Alice", field="messages") -> dict:
        value = {"messaging_product": "whatsapp", "contacts": _contacts(name)}
        if messages:
            value["messages"] = list(messages)
        if statuses:
            value["statuses"] = list(statuses)
        return {
            "object": "whatsapp_business_account",
            "entry": [{"id": "102290129340398", "changes": [{"field": field, "value": value}]}],
        }

    return _make


@pytest.fixture
def flat_payload():
    """Legacy shape: messages/statuses arrays at the root."""

    def _make(messages=(), statuses=(), name="Alice") -> dict:
        return {
            "contacts": _contacts(name),
            "messages": list(messages),
            "statuses": list(statuses),
        }

    return _make


@pytest.fixture
def app_settings(database_url) -> Settings:
    settings = Settings()
    settings.DATABASE_URL = database_url
    settings.WEBHOOK_SECRET = None
    return settings


@pytest.fixture
def client(app_settings):
    app = create_app(app_settings)
    with TestClient(app) as c:
        yield c
