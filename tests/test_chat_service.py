import asyncio
import json
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from conftest import admin, buyer, message_from, seller
from marketchat.core.errors import AuthorizationError, NotFoundError, ValidationError
from marketchat.database.connection import TransactionRunner
from marketchat.repositories.conversation_repository import ConversationRepository, participant_key
from marketchat.repositories.message_repository import MessageRepository
from marketchat.services.chat_service import ChatService, participant_ids_of


class RecordingBus:

    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, message))


async def _conversation(db, cid):
    return await ConversationRepository(db).get_by_id(cid)


def test_buyer_seller_scenario(service, db):
    a, b = buyer("A"), seller("B")

    async def scenario():
        cid = await service.resolve_conversation([a, b], {"type": "product", "id": "P1"})
        convo = await _conversation(db, cid)
        assert convo["unread_counts"] == {}
        assert convo["related_entity"] == {"type": "product", "id": "P1", "name": ""}

        await service.send_message(cid, message_from(a, "Hi"))
        convo = await _conversation(db, cid)
        assert convo["unread_counts"] == {"B": 1}
        assert convo["last_message"]["text"] == "Hi"
        assert convo["last_message"]["sender_id"] == "A"

        assert await service.mark_read(cid, "B") == 1
        convo = await _conversation(db, cid)
        assert convo["unread_counts"]["B"] == 0

        await service.send_message(cid, message_from(b, "Hello"))
        convo = await _conversation(db, cid)
        assert convo["unread_counts"] == {"B": 0, "A": 1}

        page1, cursor = await service.get_messages(cid, "A", page_size=1)
        assert [m["text"] for m in page1] == ["Hello"]
        assert cursor is not None
        page2, cursor = await service.get_messages(cid, "A", page_size=1, cursor=cursor)
        assert [m["text"] for m in page2] == ["Hi"]
        assert cursor is None

    asyncio.run(scenario())


def test_resolve_is_order_independent(service):
    async def scenario():
        first = await service.resolve_conversation([buyer(), seller()])
        second = await service.resolve_conversation([seller(), buyer()])
        serialized = {**buyer(), "id": json.dumps({"uid": "B1", "email": "b@example.com"})}
        third = await service.resolve_conversation([serialized, seller()])
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first == second == third


def test_resolve_keeps_participant_ids_in_step(service, db):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller(), admin()])
        return await _conversation(db, cid)

    convo = asyncio.run(scenario())
    assert set(convo["participant_ids"]) == {p["id"] for p in convo["participants"]}
    assert convo["participant_key"] == participant_key(["AD1", "B1", "S1"])


def test_concurrent_create_returns_existing(db):
    repo = ConversationRepository(db)
    participants = [buyer(), seller()]

    async def scenario():
        first = await repo.create(participants)
        second = await repo.create(participants)
        return first, second

    first, second = asyncio.run(scenario())
    assert first["_id"] == second["_id"]


@pytest.mark.parametrize(
    "participants",
    [
        [buyer()],
        [buyer(), {"id": "S1", "display_name": "Sam", "role": "guest"}],
        [buyer(), {"id": "S1", "role": "seller"}],
        [buyer(), {"id": "", "display_name": "Sam", "role": "seller"}],
        [buyer(), seller("S.1")],
        [buyer(), buyer()],
        "B1,S1",
    ],
)
def test_resolve_rejects_malformed_participants(service, participants):
    with pytest.raises(ValidationError):
        asyncio.run(service.resolve_conversation(participants))


def test_resolve_rejects_unknown_related_entity(service):
    with pytest.raises(ValidationError):
        asyncio.run(service.resolve_conversation([buyer(), seller()], {"type": "invoice", "id": "1"}))


def test_resolve_accepts_aliased_fields(service, db):
    legacy = {"id": "B1", "name": "Bea", "type": "buyer", "avatar": "https://img/b1.png"}

    async def scenario():
        cid = await service.resolve_conversation([legacy, seller()])
        return await _conversation(db, cid)

    convo = asyncio.run(scenario())
    stored = next(p for p in convo["participants"] if p["id"] == "B1")
    assert stored == {"id": "B1", "display_name": "Bea", "role": "buyer", "avatar_url": "https://img/b1.png"}


def test_send_bumps_every_other_participant(service, db):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller(), admin()])
        await service.send_message(cid, message_from(buyer(), "first"))
        await service.send_message(cid, message_from(buyer(), "second"))
        return await _conversation(db, cid)

    convo = asyncio.run(scenario())
    assert convo["unread_counts"] == {"S1": 2, "AD1": 2}
    assert convo["message_seq"] == 2


def test_send_stores_message_text_verbatim(service, db):
    attachment = {"type": "image", "url": "https://img/1.png", "name": "1.png", "size": 120}

    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        mid = await service.send_message(cid, message_from(buyer(), "  line1\n  line2\n", attachments=[attachment]))
        return cid, await MessageRepository(db).get_by_id(cid, mid)

    cid, message = asyncio.run(scenario())
    assert message["text"] == "  line1\n  line2\n"
    assert message["conversation_id"] == cid
    assert message["read"] is False
    assert message["seq"] == 1
    assert message["attachments"] == [attachment]
    assert "sender_avatar" not in message


@pytest.mark.parametrize(
    "overrides",
    [
        {"text": "   "},
        {"text": None},
        {"sender_role": "guest"},
        {"sender_name": ""},
        {"attachments": [{"type": "video", "url": "u", "name": "n"}]},
        {"attachments": [{"type": "image", "url": "u", "name": "n", "size": -1}]},
    ],
)
def test_send_rejects_malformed_message(service, overrides):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await service.send_message(cid, {**message_from(buyer()), **overrides})

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_send_by_stranger_is_rejected(service, db):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        with pytest.raises(AuthorizationError):
            await service.send_message(cid, message_from(buyer("X9", "Xena")))
        return await _conversation(db, cid)

    convo = asyncio.run(scenario())
    assert convo["unread_counts"] == {}
    assert convo["message_seq"] == 0


@pytest.mark.parametrize("cid", [str(ObjectId()), "not-an-id"])
def test_send_to_missing_conversation(service, cid):
    with pytest.raises(NotFoundError):
        asyncio.run(service.send_message(cid, message_from(buyer())))


def test_mark_read_only_touches_others_messages(service, db):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await service.send_message(cid, message_from(buyer(), "from buyer"))
        await service.send_message(cid, message_from(seller(), "from seller"))
        updated = await service.mark_read(cid, "S1")
        messages, _ = await service.get_messages(cid, "S1")
        return updated, messages, await _conversation(db, cid)

    updated, messages, convo = asyncio.run(scenario())
    assert updated == 1
    by_text = {m["text"]: m["read"] for m in messages}
    assert by_text == {"from buyer": True, "from seller": False}
    assert convo["unread_counts"] == {"S1": 0, "B1": 1}


def test_mark_read_zeroes_legacy_counter_keys(service, db):
    legacy_key = '{"uid":"B1"}'

    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await db["conversations"].update_one({"_id": ObjectId(cid)}, {"$set": {f"unread_counts.{legacy_key}": 4}})
        await service.mark_read(cid, legacy_key)
        return await _conversation(db, cid)

    convo = asyncio.run(scenario())
    assert convo["unread_counts"] == {legacy_key: 0, "B1": 0}


def test_mark_read_by_stranger_is_rejected(service):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await service.mark_read(cid, "X9")

    with pytest.raises(AuthorizationError):
        asyncio.run(scenario())


def test_pages_cover_every_message_once(service):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        for i in range(7):
            sender = buyer() if i % 2 else seller()
            await service.send_message(cid, message_from(sender, f"m{i}"))
        seen, cursor = [], None
        while True:
            page, cursor = await service.get_messages(cid, "B1", page_size=3, cursor=cursor)
            seen.extend(m["text"] for m in page)
            if cursor is None:
                return seen

    assert asyncio.run(scenario()) == [f"m{i}" for i in reversed(range(7))]


def test_last_full_page_has_no_cursor(service):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        for i in range(4):
            await service.send_message(cid, message_from(buyer(), f"m{i}"))
        _, cursor = await service.get_messages(cid, "B1", page_size=2)
        return await service.get_messages(cid, "B1", page_size=2, cursor=cursor)

    page, cursor = asyncio.run(scenario())
    assert [m["text"] for m in page] == ["m1", "m0"]
    assert cursor is None


def test_page_size_is_clamped(service):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        for i in range(3):
            await service.send_message(cid, message_from(buyer(), f"m{i}"))
        return await service.get_messages(cid, "B1", page_size=0)

    page, cursor = asyncio.run(scenario())
    assert len(page) == 3
    assert cursor is None


@pytest.mark.parametrize("cursor", ["abc", "0", "-4"])
def test_bad_cursor_yields_empty_page(service, cursor):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await service.send_message(cid, message_from(buyer()))
        return await service.get_messages(cid, "B1", cursor=cursor)

    assert asyncio.run(scenario()) == ([], None)


def test_stranger_reads_nothing(service):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await service.send_message(cid, message_from(buyer(), "secret"))
        return (
            await service.get_conversation(cid, "X9"),
            await service.get_messages(cid, "X9"),
            await service.list_conversations("X9"),
            await service.total_unread("X9"),
        )

    assert asyncio.run(scenario()) == (None, ([], None), [], 0)


def test_serialized_requester_reads_plain_conversation(service):
    async def scenario():
        cid = await service.resolve_conversation([buyer("A1", "Ann"), seller()])
        return cid, await service.get_conversation(cid, '{"uid":"A1"}')

    cid, convo = asyncio.run(scenario())
    assert convo["_id"] == cid


def test_list_conversations_newest_activity_first(service, db):
    async def scenario():
        older = await service.resolve_conversation([buyer(), seller("S1")])
        newer = await service.resolve_conversation([buyer(), seller("S2")])
        await service.resolve_conversation([buyer("B9"), seller("S3")])
        await db["conversations"].update_one(
            {"_id": ObjectId(older)}, {"$set": {"updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc)}}
        )
        await db["conversations"].update_one(
            {"_id": ObjectId(newer)}, {"$set": {"updated_at": datetime(2024, 1, 2, tzinfo=timezone.utc)}}
        )
        items = await service.list_conversations("B1")
        return [c["_id"] for c in items], [newer, older]

    listed, expected = asyncio.run(scenario())
    assert listed == expected


def test_total_unread_sums_across_conversations(service, db):
    async def scenario():
        first = await service.resolve_conversation([buyer(), seller("S1")])
        second = await service.resolve_conversation([buyer(), seller("S2")])
        await service.send_message(first, message_from(seller("S1"), "a"))
        await service.send_message(second, message_from(seller("S2"), "b"))
        await service.send_message(second, message_from(seller("S2"), "c"))
        await db["conversations"].update_one(
            {"_id": ObjectId(first)}, {"$set": {'unread_counts.{"uid":"B1"}': 2}}
        )
        return await service.total_unread("B1")

    assert asyncio.run(scenario()) == 5


def test_delete_requires_admin(service):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        mid = await service.send_message(cid, message_from(buyer()))
        await service.delete_message(cid, mid, "seller")

    with pytest.raises(AuthorizationError):
        asyncio.run(scenario())


def test_admin_delete_of_unread_message_lowers_counters(service, db):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await service.send_message(cid, message_from(buyer(), "keep"))
        mid = await service.send_message(cid, message_from(buyer(), "spam"))
        await service.delete_message(cid, mid, "admin")
        messages, _ = await service.get_messages(cid, "B1")
        return messages, await _conversation(db, cid)

    messages, convo = asyncio.run(scenario())
    assert [m["text"] for m in messages] == ["keep"]
    assert convo["unread_counts"] == {"S1": 1}


def test_admin_delete_never_drops_counter_below_zero(service, db):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        mid = await service.send_message(cid, message_from(buyer()))
        await db["conversations"].update_one({"_id": ObjectId(cid)}, {"$set": {"unread_counts.S1": 0}})
        await service.delete_message(cid, mid, "admin")
        return await _conversation(db, cid)

    assert asyncio.run(scenario())["unread_counts"] == {"S1": 0}


def test_admin_delete_of_missing_message(service):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await service.delete_message(cid, str(ObjectId()), "admin")

    with pytest.raises(NotFoundError):
        asyncio.run(scenario())


def test_repair_canonicalizes_serialized_ids(service, db):
    serialized = '{"uid":"A1"}'
    legacy = {
        "participants": [
            {"id": serialized, "display_name": "Ann", "role": "buyer"},
            {"id": "S1", "display_name": "Sam", "role": "seller"},
        ],
        "participant_ids": [serialized, "S1"],
        "participant_key": "legacy-1",
        "unread_counts": {serialized: 2, "S1": 1},
        "message_seq": 3,
        "last_message": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }

    async def scenario():
        result = await db["conversations"].insert_one(legacy)
        fixed = await service.repair_conversations()
        again = await service.repair_conversations()
        return fixed, again, await _conversation(db, str(result.inserted_id))

    fixed, again, convo = asyncio.run(scenario())
    assert (fixed, again) == (1, 0)
    assert [p["id"] for p in convo["participants"]] == ["A1", "S1"]
    assert convo["participant_ids"] == ["A1", "S1"]
    assert participant_ids_of(convo) == convo["participant_ids"]
    assert convo["participant_key"] == participant_key(["A1", "S1"])
    assert convo["unread_counts"] == {"A1": 2, "S1": 1}


def test_events_carry_ids_only(db, settings):
    bus = RecordingBus()
    service = ChatService(
        MessageRepository(db), ConversationRepository(db), TransactionRunner(None, enabled=False), bus, settings
    )

    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        mid = await service.send_message(cid, message_from(buyer(), "private words"))
        return cid, mid

    cid, mid = asyncio.run(scenario())
    channels = {channel for channel, _ in bus.published}
    assert {f"conversation:{cid}", "participant:B1", "participant:S1"} <= channels
    for _, payload in bus.published:
        assert "private words" not in payload
        assert "Bea" not in payload
    sent = [json.loads(p) for _, p in bus.published if json.loads(p)["type"] == "message.created"]
    assert sent and all(event["message_id"] == mid for event in sent)


def test_last_message_keeps_surrounding_whitespace(service, db):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        await service.send_message(cid, message_from(seller(), "\n  indented reply  "))
        return await _conversation(db, cid)

    assert asyncio.run(scenario())["last_message"]["text"] == "\n  indented reply  "


def test_list_and_total_cover_every_conversation(service):
    async def scenario():
        for i in range(205):
            shop = seller(f"S{i}", f"Shop {i}")
            cid = await service.resolve_conversation([buyer(), shop])
            await service.send_message(cid, message_from(shop, "in stock"))
        return len(await service.list_conversations("B1")), await service.total_unread("B1")

    assert asyncio.run(scenario()) == (205, 205)


def test_concurrent_senders_converge(service, db):
    async def scenario():
        cid = await service.resolve_conversation([buyer(), seller()])
        sends = [service.send_message(cid, message_from(buyer(), f"b{i}")) for i in range(6)]
        sends += [service.send_message(cid, message_from(seller(), f"s{i}")) for i in range(4)]
        await asyncio.gather(*sends)
        messages, _ = await service.get_messages(cid, "B1", page_size=50)
        return messages, await _conversation(db, cid)

    messages, convo = asyncio.run(scenario())
    assert convo["unread_counts"] == {"S1": 6, "B1": 4}
    assert convo["message_seq"] == 10
    assert sorted(m["seq"] for m in messages) == list(range(1, 11))
