import pytest

from tradepost.constants import (
    STATUS_PENDING, STATUS_ACCEPTED, STATUS_REJECTED, STATUS_CANCELED,
    TRADE_OFFER, TRADE_ACCEPTED, TRADE_REJECTED, TRADE_CANCELLED,
)
from tradepost.db import db_card_owner, db_card_transfer, db_card_remove, db_trade_list_for_party
from tradepost.decks import db_deck_cards, db_decks_containing
from tradepost.errors import (
    NotFoundError, PermissionDeniedError, InvalidArgumentError, InvalidStateError, ConflictError,
)
from tradepost.trade_engine import TradeEngine, Trade, check_pending

from conftest import ALICE, BOB, CAROL, FailingNotifier


def owners(state, *iids):
    return {iid: db_card_owner(state, iid) for iid in iids}


# ---------- propose ----------

def test_propose_creates_pending_trade(seeded, engine):
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    assert t.status == STATUS_PENDING
    assert t.initiator_id == ALICE and t.receiver_id == BOB
    assert t.initiator_items == ("a2",) and t.receiver_items == ("b1",)
    assert t.responded_at is None
    assert engine.get(t.id) == t


def test_propose_accepts_int_party_ids(seeded, engine):
    t = engine.propose(int(ALICE), int(BOB), ["a2"], ["b1"])
    assert t.initiator_id == ALICE
    assert t.involves(int(BOB))


def test_propose_strips_offered_cards_from_decks(seeded, engine):
    deck_id = seeded["alice_deck"]
    assert db_deck_cards(seeded["state"], deck_id) == ["a1"]
    engine.propose(ALICE, BOB, ["a1"], ["b1"])
    assert db_deck_cards(seeded["state"], deck_id) == []


def test_propose_notifies_receiver(seeded, engine, notifier):
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    assert notifier.kinds_for(BOB) == [TRADE_OFFER]
    assert notifier.sent[0]["title"] == "New Trade Offer"
    assert notifier.sent[0]["metadata"]["trade_id"] == t.id


@pytest.mark.parametrize("give,get,initiator,receiver", [
    (["a2"], ["b1"], ALICE, ALICE),
    ([], ["b1"], ALICE, BOB),
    (["a2"], [], ALICE, BOB),
    (["a2", "a2"], ["b1"], ALICE, BOB),
    (["a2", "b1"], ["b1"], ALICE, BOB),
    (["a1", "a2", "a3", "a4"], ["b1"], ALICE, BOB),
    (["a2"], ["b1"], "", BOB),
])
def test_propose_rejects_bad_arguments(seeded, engine, give, get, initiator, receiver):
    with pytest.raises(InvalidArgumentError):
        engine.propose(initiator, receiver, give, get)
    assert db_trade_list_for_party(seeded["state"], ALICE) == []


def test_propose_accepts_single_id_strings(seeded, engine):
    t = engine.propose(ALICE, BOB, "a2", "b1")
    assert t.initiator_items == ("a2",) and t.receiver_items == ("b1",)
    done = engine.respond(BOB, t.id, True)
    assert owners(seeded["state"], "a2", "b1") == {"a2": BOB, "b1": ALICE}
    assert done.status == STATUS_ACCEPTED


def test_propose_unknown_card(seeded, engine):
    with pytest.raises(NotFoundError) as ei:
        engine.propose(ALICE, BOB, ["a2"], ["nope"])
    assert ei.value.instance_id == "nope"


def test_propose_card_not_owned_by_initiator(seeded, engine):
    with pytest.raises(PermissionDeniedError) as ei:
        engine.propose(ALICE, BOB, ["c1"], ["b1"])
    assert ei.value.instance_id == "c1"


def test_propose_card_not_owned_by_receiver(seeded, engine):
    with pytest.raises(PermissionDeniedError):
        engine.propose(ALICE, BOB, ["a2"], ["c1"])


def test_failed_proposal_persists_nothing(seeded, engine, notifier):
    # a1 is in a deck; the failure on c1 must leave that membership alone
    with pytest.raises(PermissionDeniedError):
        engine.propose(ALICE, BOB, ["a1"], ["c1"])
    assert db_trade_list_for_party(seeded["state"], ALICE) == []
    assert db_deck_cards(seeded["state"], seeded["alice_deck"]) == ["a1"]
    assert notifier.sent == []


# ---------- respond ----------

def test_accept_swaps_ownership(seeded, engine, notifier):
    state = seeded["state"]
    t = engine.propose(ALICE, BOB, ["a1", "a2"], ["b1"])
    done = engine.respond(BOB, t.id, True)

    assert done.status == STATUS_ACCEPTED
    assert done.responded_at is not None
    assert owners(state, "a1", "a2", "b1") == {"a1": BOB, "a2": BOB, "b1": ALICE}
    assert notifier.kinds_for(ALICE) == [TRADE_ACCEPTED]


def test_reject_keeps_ownership(seeded, engine, notifier):
    state = seeded["state"]
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    done = engine.respond(BOB, t.id, False)

    assert done.status == STATUS_REJECTED
    assert owners(state, "a2", "b1") == {"a2": ALICE, "b1": BOB}
    assert notifier.kinds_for(ALICE) == [TRADE_REJECTED]


def test_respond_strips_cards_added_to_decks_after_proposal(seeded, engine):
    from tradepost.decks import db_deck_create, db_deck_add_card
    state = seeded["state"]
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    bob_deck = db_deck_create(state, BOB, "Bob deck")["deck_id"]
    db_deck_add_card(state, BOB, bob_deck, "b1")

    engine.respond(BOB, t.id, False)
    assert db_decks_containing(state, "b1") == set()


def test_only_receiver_can_respond(seeded, engine):
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    for who in (ALICE, CAROL):
        with pytest.raises(PermissionDeniedError):
            engine.respond(who, t.id, True)
    assert engine.get(t.id).status == STATUS_PENDING


def test_respond_unknown_trade(seeded, engine):
    with pytest.raises(NotFoundError) as ei:
        engine.respond(BOB, "does-not-exist", True)
    assert ei.value.trade_id == "does-not-exist"


def test_blank_trade_id(seeded, engine):
    with pytest.raises(InvalidArgumentError):
        engine.respond(BOB, "  ", True)


def test_second_response_is_invalid_state(seeded, engine):
    state = seeded["state"]
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    engine.respond(BOB, t.id, True)

    with pytest.raises(InvalidStateError) as ei:
        engine.respond(BOB, t.id, True)
    assert ei.value.current_status == STATUS_ACCEPTED
    assert "already accepted" in ei.value.message
    # no double transfer
    assert owners(state, "a2", "b1") == {"a2": BOB, "b1": ALICE}


def test_conflict_when_card_moved_after_proposal(seeded, engine, notifier):
    state = seeded["state"]
    t = engine.propose(ALICE, BOB, ["a1", "a2"], ["b1"])
    notifier.sent.clear()
    # Alice gives a2 away through another path before Bob answers
    assert db_card_transfer(state, "a2", ALICE, CAROL) == (True, "")

    with pytest.raises(ConflictError) as ei:
        engine.respond(BOB, t.id, True)
    err = ei.value
    assert err.trade_id == t.id
    assert err.instance_id == "a2"
    assert err.details["current_owner"] == CAROL

    # all-or-nothing: a1 (moved first in list order) was rolled back
    assert owners(state, "a1", "a2", "b1") == {"a1": ALICE, "a2": CAROL, "b1": BOB}
    assert engine.get(t.id).status == STATUS_PENDING
    assert notifier.sent == []

    # the trade can still be rejected or canceled afterwards
    assert engine.cancel(ALICE, t.id).status == STATUS_CANCELED


def test_conflict_retry_succeeds_once_ownership_restored(seeded, engine):
    state = seeded["state"]
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    db_card_transfer(state, "b1", BOB, CAROL)
    with pytest.raises(ConflictError):
        engine.respond(BOB, t.id, True)

    db_card_transfer(state, "b1", CAROL, BOB)
    assert engine.respond(BOB, t.id, True).status == STATUS_ACCEPTED
    assert owners(state, "a2", "b1") == {"a2": BOB, "b1": ALICE}


def test_accept_when_card_deleted(seeded, engine):
    state = seeded["state"]
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    assert db_card_remove(state, BOB, "b1")["card_name"] == "Card b1"

    with pytest.raises(NotFoundError) as ei:
        engine.respond(BOB, t.id, True)
    assert ei.value.instance_id == "b1"
    assert db_card_owner(state, "a2") == ALICE
    assert engine.get(t.id).status == STATUS_PENDING


# ---------- cancel ----------

def test_cancel_by_initiator(seeded, engine, notifier):
    state = seeded["state"]
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    done = engine.cancel(ALICE, t.id)
    assert done.status == STATUS_CANCELED
    assert done.responded_at is not None
    assert owners(state, "a2", "b1") == {"a2": ALICE, "b1": BOB}
    assert notifier.kinds_for(BOB) == [TRADE_OFFER, TRADE_CANCELLED]

    with pytest.raises(InvalidStateError):
        engine.respond(BOB, t.id, True)


def test_only_initiator_can_cancel(seeded, engine):
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    with pytest.raises(PermissionDeniedError):
        engine.cancel(BOB, t.id)


def test_cancel_after_accept_is_invalid_state(seeded, engine):
    t = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    engine.respond(BOB, t.id, False)
    with pytest.raises(InvalidStateError) as ei:
        engine.cancel(ALICE, t.id)
    assert ei.value.current_status == STATUS_REJECTED


# ---------- queries ----------

def test_list_for_party_newest_first(seeded, engine):
    t1 = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    t2 = engine.propose(ALICE, CAROL, ["a3"], ["c1"])
    t3 = engine.propose(BOB, ALICE, ["b2"], ["a1"])

    assert [t.id for t in engine.list_for_party(ALICE)] == [t3.id, t2.id, t1.id]
    assert [t.id for t in engine.list_for_party(CAROL)] == [t2.id]
    assert [t.id for t in engine.list_for_party(ALICE, limit=1)] == [t3.id]


def test_list_pending_filters_terminal(seeded, engine):
    t1 = engine.propose(ALICE, BOB, ["a2"], ["b1"])
    t2 = engine.propose(ALICE, CAROL, ["a3"], ["c1"])
    engine.cancel(ALICE, t1.id)
    assert [t.id for t in engine.list_pending(ALICE)] == [t2.id]
    assert engine.list_pending(BOB) == []


def test_get_unknown_trade(seeded, engine):
    with pytest.raises(NotFoundError):
        engine.get("missing")


# ---------- notifications are best-effort ----------

def test_failing_notifier_does_not_block_transitions(seeded):
    state = seeded["state"]
    failing = FailingNotifier()
    eng = TradeEngine(state, failing)
    t = eng.propose(ALICE, BOB, ["a2"], ["b1"])
    done = eng.respond(BOB, t.id, True)
    assert done.status == STATUS_ACCEPTED
    assert owners(state, "a2", "b1") == {"a2": BOB, "b1": ALICE}
    assert failing.calls == 2


def test_engine_without_notifier(seeded):
    eng = TradeEngine(seeded["state"])
    t = eng.propose(ALICE, BOB, ["a2"], ["b1"])
    assert eng.cancel(ALICE, t.id).status == STATUS_CANCELED


# ---------- value object ----------

def test_trade_helpers(seeded, engine):
    t = engine.propose(ALICE, BOB, ["a2"], ["b1", "b2"])
    assert t.is_pending and not t.is_terminal
    assert t.all_items == ("a2", "b1", "b2")
    assert check_pending(t) == (True, "")
    d = t.to_dict()
    assert d["receiver_items"] == ["b1", "b2"]
    assert d["responded_at"] is None

    done = engine.respond(BOB, t.id, False)
    assert done.is_terminal
    assert check_pending(done) == (False, STATUS_REJECTED)
    assert Trade.from_row({
        "trade_id": "x", "initiator_id": ALICE, "receiver_id": BOB,
        "initiator_items": ["a"], "receiver_items": ["b"], "status": STATUS_PENDING,
        "responded_at": None, "created_at": "2024-01-01T00:00:00+00:00", "updated_at": None,
    }).updated_at.year == 2024
