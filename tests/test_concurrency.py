"""Concurrent ingestion: no duplicate contacts/conversations, exact unread counts."""

from concurrent.futures import ThreadPoolExecutor

from omnichannel.domain.ingestion import IngestionStage, ingest_event
from omnichannel.domain.models import Platform

from .helpers import make_event


def test_distinct_senders_create_one_contact_each(store):
    events = [
        make_event(sender_id=f"sender-{n % 5}", upstream_id=f"up-{n}", seconds=n)
        for n in range(40)
    ]
    with ThreadPoolExecutor(max_workers=8) as pool:
        states = list(pool.map(lambda e: ingest_event(e, store=store), events))

    assert all(s.stage == IngestionStage.STORED for s in states)
    assert len(store.contacts) == 5
    assert len(store.conversations) == 5
    assert sum(c.unread_count for c in store.conversations.values()) == 40


def test_one_conversation_per_contact_and_platform(store):
    events = [
        make_event(
            platform=[Platform.WHATSAPP, Platform.INSTAGRAM][n % 2],
            sender_id="same",
            upstream_id=f"up-{n}",
        )
        for n in range(20)
    ]
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda e: ingest_event(e, store=store), events))

    keys = [(c.contact_id, c.platform) for c in store.conversations.values()]
    assert len(keys) == len(set(keys)) == 2


def test_concurrent_redelivery_stores_once(store):
    event = make_event()
    with ThreadPoolExecutor(max_workers=8) as pool:
        states = list(pool.map(lambda _: ingest_event(event, store=store), range(16)))

    stages = [s.stage for s in states]
    assert stages.count(IngestionStage.STORED) == 1
    assert stages.count(IngestionStage.DUPLICATE) == 15
    assert len(store.messages) == 1
