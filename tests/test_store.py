import sqlite3

import pytest

from beacon.store import (
    DELIVERY_FAILED,
    DELIVERY_QUEUED,
    DELIVERY_SENT,
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
    BeaconStore,
)
from conftest import make_message


def _outbound(store, conversation_id="conv-1", **kwargs):
    params = {
        "conversation_id": conversation_id,
        "content": {"text": "reply"},
        "channel": "telegram",
    }
    params.update(kwargs)
    return store.create_outbound(**params)


def test_record_inbound_keeps_text_and_parent(store):
    first = make_message("hello", message_id="p-1", user_id="user-1")
    first.conversation_id = "conv-1"
    first_id = store.record_inbound(first)

    second = make_message("and again", user_id="user-1")
    second.conversation_id = "conv-1"
    second.meta["reply_to_message_id"] = first_id
    second_id = store.record_inbound(second)

    stored = store.get_message(second_id)
    assert stored.text == "and again"
    assert stored.direction == DIRECTION_INBOUND
    assert stored.reply_to_message_id == first_id
    assert [m.id for m in store.get_replies(first_id)] == [second_id]
    assert store.find_message_by_provider_id("p-1", user_id="user-1") == first_id


def test_create_outbound_writes_message_and_queued_delivery(store):
    message_id, delivery_id = _outbound(store)

    message = store.get_message(message_id)
    delivery = store.get_delivery(delivery_id)
    assert message.direction == DIRECTION_OUTBOUND
    assert delivery.message_id == message_id
    assert delivery.status == DELIVERY_QUEUED
    assert delivery.attempts == 1


def test_create_outbound_is_atomic(store):
    with pytest.raises(sqlite3.IntegrityError):
        _outbound(store, conversation_id="conv-atomic", channel=None)
    assert store.conversation_message_count("conv-atomic") == 0


def test_transition_only_leaves_queued_once(store):
    _, delivery_id = _outbound(store)

    assert store.transition_delivery(delivery_id, DELIVERY_SENT, provider_message_id="tg-9")
    assert not store.transition_delivery(delivery_id, DELIVERY_FAILED, error_message="late")

    delivery = store.get_delivery(delivery_id)
    assert delivery.status == DELIVERY_SENT
    assert delivery.sent_at is not None
    assert delivery.failed_at is None
    assert delivery.error_message is None


def test_transition_rejects_non_terminal_target(store):
    _, delivery_id = _outbound(store)
    with pytest.raises(ValueError):
        store.transition_delivery(delivery_id, DELIVERY_QUEUED)


def test_reply_pointer_resolves_through_delivery_provider_id(store):
    message_id, delivery_id = _outbound(store, user_id="user-1")
    store.transition_delivery(delivery_id, DELIVERY_SENT, provider_message_id="tg-42")
    assert store.find_message_by_provider_id("tg-42", user_id="user-1") == message_id
    assert store.find_message_by_provider_id("tg-42", user_id="user-1", gateway_type="telegram") == message_id
    assert store.find_message_by_provider_id("tg-42", user_id="user-1", gateway_type="discord") is None
    assert store.find_message_by_provider_id("missing", user_id="user-1") is None


def test_provider_ids_are_scoped_to_their_user(store):
    mine = make_message("mine", sender="111", message_id="42", user_id="user-a")
    mine.conversation_id = "conv-a"
    mine_id = store.record_inbound(mine)
    theirs = make_message("theirs", sender="222", message_id="42", user_id="user-b")
    theirs.conversation_id = "conv-b"
    theirs_id = store.record_inbound(theirs)
    _, delivery_id = _outbound(store, conversation_id="conv-a", user_id="user-a")
    store.transition_delivery(delivery_id, DELIVERY_SENT, provider_message_id="77")

    assert store.find_message_by_provider_id("42", user_id="user-a", gateway_type="telegram") == mine_id
    assert store.find_message_by_provider_id("42", user_id="user-b", gateway_type="telegram") == theirs_id
    assert store.find_message_by_provider_id("42", user_id="user-a", gateway_type="discord") is None
    assert store.find_message_by_provider_id("77", user_id="user-b") is None
    assert store.find_message_by_provider_id("42", user_id=None) is None


def test_newest_window_returns_latest_oldest_first(store):
    for i in range(6):
        _outbound(store, content={"text": f"m{i}"})
    latest = store.get_conversation_messages("conv-1", 3, newest=True)
    assert [m.text for m in latest] == ["m3", "m4", "m5"]
    earliest = store.get_conversation_messages("conv-1", 2)
    assert [m.text for m in earliest] == ["m0", "m1"]


def test_recent_conversations_most_recent_first(store):
    _outbound(store, conversation_id="old", user_id="user-1")
    _outbound(store, conversation_id="other-user", user_id="user-2")
    _outbound(store, conversation_id="new", user_id="user-1")

    recent = store.recent_conversations("user-1", 5)
    assert [c.conversation_id for c in recent] == ["new", "old"]


def test_conversation_state_never_goes_backwards(store):
    assert store.set_conversation_state("conv-1", "v2", 8)
    assert not store.set_conversation_state("conv-1", "v1", 4)
    state = store.get_conversation_state("conv-1")
    assert state.summary == "v2"
    assert state.message_count == 8


def test_identity_upsert_keeps_existing_refs(store):
    store.upsert_identity("telegram", "gw", "111", "user-1", identity_ref="id-ref")
    store.upsert_identity("telegram", "gw", "111", "user-1", brain_ref="brain-ref")

    link = store.resolve_links("telegram", "gw", "111")
    assert link.identity_ref == "id-ref"
    assert link.brain_ref == "brain-ref"
    assert store.resolve_user("telegram", "other-gw", "111") is None
    assert store.resolve_user_loose("111") == "user-1"
    assert store.find_gateway_user("user-1", "telegram").gateway_user == "111"
    assert store.find_gateway_user("user-1", "discord") is None


def test_nicknames_are_case_insensitive(store):
    store.upsert_nickname("user-1", "Alice", "alice@wallet.test")
    assert store.get_nickname("user-1", "ALICE") == "alice@wallet.test"
    assert store.list_nicknames("user-1") == [("alice", "alice@wallet.test")]
    assert store.delete_nickname("user-1", "alice")
    assert store.get_nickname("user-1", "alice") is None


def test_actions_are_logged_in_order(store):
    store.log_action("b-1", "agent_request", {"agent": "payment"})
    store.log_action("b-1", "identity_payLnAddress", {"amount": 5}, "pending")
    assert [a["type"] for a in store.list_actions("b-1")] == ["agent_request", "identity_payLnAddress"]
    assert store.list_actions("b-1")[1]["status"] == "pending"


def test_schema_mismatch_rebuilds_tables(tmp_path):
    path = str(tmp_path / "old.sqlite")
    db = BeaconStore(path)
    db.upsert_identity("telegram", "gw", "111", "user-1")
    with db.conn:
        db.conn.execute("UPDATE _meta SET v='1' WHERE k='schema_version'")
    db.close()

    reopened = BeaconStore(path)
    try:
        assert reopened.resolve_user("telegram", "gw", "111") is None
    finally:
        reopened.close()
