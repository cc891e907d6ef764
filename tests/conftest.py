import os

# Cog modules register guild-scoped commands at import time.
os.environ.setdefault("GUILD_ID", "1")

import pytest

from tradepost.state import AppState
from tradepost.db import db_init, db_init_trades, db_init_notifications, db_card_grant
from tradepost.decks import db_deck_create, db_deck_add_card
from tradepost.trade_engine import TradeEngine

ALICE = "1001"
BOB = "1002"
CAROL = "1003"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, recipient_id, kind, title, message, *, metadata=None):
        self.sent.append({
            "recipient_id": recipient_id, "kind": kind, "title": title,
            "message": message, "metadata": metadata or {},
        })
        return True

    def kinds_for(self, recipient_id):
        return [n["kind"] for n in self.sent if n["recipient_id"] == recipient_id]


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    def notify(self, recipient_id, kind, title, message, *, metadata=None):
        self.calls += 1
        raise RuntimeError("notification backend down")


@pytest.fixture
def state(tmp_path):
    st = AppState(db_path=str(tmp_path / "tradepost.sqlite3"), busy_timeout=5)
    db_init(st)
    db_init_trades(st)
    db_init_notifications(st)
    return st


@pytest.fixture
def seeded(state):
    """Alice owns a1, a2, a3; Bob owns b1, b2; Carol owns c1. a1 sits in Alice's deck."""
    for owner, iids in ((ALICE, ["a1", "a2", "a3"]), (BOB, ["b1", "b2"]), (CAROL, ["c1"])):
        for iid in iids:
            db_card_grant(state, owner, card_name=f"Card {iid}", card_set="LOB", card_rarity="Rare", instance_id=iid)
    deck = db_deck_create(state, ALICE, "Main")
    db_deck_add_card(state, ALICE, deck["deck_id"], "a1")
    return {"state": state, "alice_deck": deck["deck_id"]}


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(state, notifier):
    return TradeEngine(state, notifier, max_items_per_side=3)
