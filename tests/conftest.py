import asyncio

import pytest
from mongomock_motor import AsyncMongoMockClient

from marketchat.core.config import Settings
from marketchat.database.connection import TransactionRunner
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.services.chat_service import ChatService
from marketchat.utils.realtime_bus import LocalBus


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        MONGO_TRANSACTIONS=False,
        REDIS_URL=None,
        JWT_SECRET="test-secret",
        MESSAGE_PAGE_SIZE=20,
        MESSAGE_PAGE_SIZE_MAX=50,
    )


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    database = client["marketchat_test"]
    asyncio.run(ConversationRepository(database).ensure_indexes(unique_key=True))
    asyncio.run(MessageRepository(database).ensure_indexes())
    return database


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def service(db, bus, settings):
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        TransactionRunner(None, enabled=False),
        bus,
        settings,
    )


def buyer(pid="B1", name="Bea"):
    return {"id": pid, "display_name": name, "role": "buyer"}


def seller(pid="S1", name="Sam"):
    return {"id": pid, "display_name": name, "role": "seller"}


def admin(pid="AD1", name="Ada"):
    return {"id": pid, "display_name": name, "role": "admin"}


def message_from(participant, text="hello", **extra):
    return {
        "text": text,
        "sender_id": participant["id"],
        "sender_name": participant["display_name"],
        "sender_role": participant["role"],
        **extra,
    }
