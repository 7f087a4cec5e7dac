# tests/core/store/test_recipients.py
"""Tests for RecipientStore and recipient sets."""

from typing import Any

import pytest


@pytest.fixture
def store(db: Any) -> Any:
    from cadence.core.store.recipients import RecipientStore

    return RecipientStore(db)


class TestRecipients:
    """Recipient upsert and lookup."""

    def test_upsert_inserts_then_updates(self, store: Any) -> None:
        from cadence.core.store.models import Recipient

        store.upsert([Recipient("r1", email="old@example.com", attributes={"plan": "free"})])
        store.upsert([Recipient("r1", email="new@example.com", name="Ana")])

        recipient = store.get("r1")
        assert recipient.email == "new@example.com"
        assert recipient.name == "Ana"
        assert recipient.attributes == {}

    def test_attributes_round_trip(self, store: Any) -> None:
        from cadence.core.store.models import Recipient

        store.upsert([Recipient("r1", phone="+15550001", attributes={"plan": "pro", "seats": 3})])

        assert store.get("r1").attributes == {"plan": "pro", "seats": 3}

    def test_get_many_omits_unknown(self, store: Any, seed_recipients: Any) -> None:
        ids = seed_recipients(3)

        found = store.get_many([ids[0], "ghost", ids[2]])
        assert set(found) == {ids[0], ids[2]}

    def test_missing_ids(self, store: Any, seed_recipients: Any) -> None:
        ids = seed_recipients(2)

        assert store.missing_ids([ids[0], "ghost", ids[1], "phantom"]) == ["ghost", "phantom"]

    def test_destination_per_channel(self) -> None:
        from cadence.contracts.enums import Channel
        from cadence.core.store.models import Recipient

        recipient = Recipient("r1", email=" ana@example.com ", phone="  ")
        assert recipient.destination(Channel.EMAIL) == "ana@example.com"
        assert recipient.destination(Channel.SMS) is None


class TestUnsubscribe:
    """Per-channel opt-outs."""

    def test_unsubscribe_is_per_channel(self, store: Any) -> None:
        from cadence.contracts.enums import Channel
        from cadence.core.store.models import Recipient

        store.upsert([Recipient("r1", email="ana@example.com", phone="+15550001")])

        assert store.unsubscribe("r1", Channel.EMAIL)

        recipient = store.get("r1")
        assert recipient.is_unsubscribed(Channel.EMAIL)
        assert not recipient.is_unsubscribed(Channel.SMS)

    def test_unknown_recipient(self, store: Any) -> None:
        from cadence.contracts.enums import Channel

        assert not store.unsubscribe("ghost", Channel.SMS)

    def test_reimport_keeps_opt_out(self, store: Any) -> None:
        from cadence.contracts.enums import Channel
        from cadence.core.store.models import Recipient

        store.upsert([Recipient("r1", email="ana@example.com")])
        store.unsubscribe("r1", Channel.EMAIL)
        store.upsert([Recipient("r1", email="ana@new.example.com")])

        recipient = store.get("r1")
        assert recipient.email == "ana@new.example.com"
        assert recipient.email_unsubscribed

    def test_new_recipient_can_arrive_unsubscribed(self, store: Any) -> None:
        from cadence.contracts.enums import Channel
        from cadence.core.store.models import Recipient

        store.upsert([Recipient("r1", phone="+15550001", sms_unsubscribed=True)])

        assert store.get("r1").is_unsubscribed(Channel.SMS)


class TestRecipientSets:
    """Ordered, paged recipient sets."""

    def test_create_set_keeps_order_and_drops_duplicates(
        self, store: Any, seed_recipients: Any
    ) -> None:
        a, b, c = seed_recipients(3)

        set_id, count = store.create_set([c, a, c, b, a])
        assert count == 3
        assert store.count(set_id) == 3
        assert store.list_ids(set_id, 0, 10) == [c, a, b]

    def test_paging(self, store: Any, seed_recipients: Any) -> None:
        ids = seed_recipients(7)
        set_id, _ = store.create_set(ids)

        assert store.list_ids(set_id, 3, 2) == ids[3:5]
        assert list(store.iter_pages(set_id, 3)) == [ids[0:3], ids[3:6], ids[6:7]]

    def test_append_continues_positions(self, store: Any, seed_recipients: Any) -> None:
        ids = seed_recipients(4)
        set_id, _ = store.create_set([])

        assert store.append_to_set(set_id, ids[:2], start=0) == 2
        assert store.append_to_set(set_id, ids[2:], start=2) == 2
        assert store.list_ids(set_id, 0, 10) == ids

    def test_empty_set(self, store: Any) -> None:
        set_id, count = store.create_set([])

        assert count == 0
        assert list(store.iter_pages(set_id, 100)) == []

    def test_large_set_spans_insert_batches(self, store: Any, seed_recipients: Any) -> None:
        ids = seed_recipients(2500)
        set_id, count = store.create_set(ids)

        assert count == 2500
        assert store.list_ids(set_id, 2499, 10) == [ids[-1]]
