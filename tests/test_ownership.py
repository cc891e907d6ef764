import pytest

from tradepost.db import (
    db_card_grant, db_card_get, db_card_owner, db_card_transfer, db_cards_owned,
    db_card_set_willing_to_trade, db_cards_willing_to_trade, db_card_remove, SystemCapability,
)
from tradepost.decks import db_deck_cards
from tradepost.errors import InvalidArgumentError, NotFoundError, PermissionDeniedError

from conftest import ALICE, BOB, CAROL


def test_grant_generates_ids(state):
    iid = db_card_grant(state, 42, card_name="  Dark Magician ", card_set="SDY", card_rarity="Ultra")
    row = db_card_get(state, iid)
    assert row["owner_id"] == "42"
    assert row["card_name"] == "Dark Magician"
    assert row["willing_to_trade"] is False
    assert len(iid) == 32


def test_grant_rejects_blank_name_and_duplicate_id(state):
    with pytest.raises(InvalidArgumentError):
        db_card_grant(state, ALICE, card_name="  ")
    db_card_grant(state, ALICE, card_name="Kuriboh", instance_id="k1")
    with pytest.raises(InvalidArgumentError):
        db_card_grant(state, BOB, card_name="Kuriboh", instance_id="k1")
    assert db_card_owner(state, "k1") == ALICE


def test_transfer_compare_and_swap(seeded):
    state = seeded["state"]
    assert db_card_transfer(state, "a2", ALICE, BOB) == (True, "")
    assert db_card_owner(state, "a2") == BOB
    # stale expectation loses and reports the current owner
    assert db_card_transfer(state, "a2", ALICE, CAROL) == (False, BOB)
    assert db_card_owner(state, "a2") == BOB
    assert db_card_transfer(state, "zzz", ALICE, BOB) == (False, "not_found")


def test_transfer_clears_willing_flag(seeded):
    state = seeded["state"]
    db_card_set_willing_to_trade(state, ALICE, "a2", True)
    db_card_transfer(state, "a2", ALICE, BOB)
    assert db_card_get(state, "a2")["willing_to_trade"] is False


def test_cards_owned_filter_and_limit(seeded):
    state = seeded["state"]
    assert [r["instance_id"] for r in db_cards_owned(state, ALICE)] == ["a1", "a2", "a3"]
    assert [r["instance_id"] for r in db_cards_owned(state, ALICE, name_filter="card a2")] == ["a2"]
    assert len(db_cards_owned(state, ALICE, limit=2)) == 2
    assert db_cards_owned(state, "nobody") == []


def test_willing_to_trade_owner_only(seeded):
    state = seeded["state"]
    with pytest.raises(PermissionDeniedError):
        db_card_set_willing_to_trade(state, BOB, "a2", True)
    with pytest.raises(NotFoundError):
        db_card_set_willing_to_trade(state, BOB, "missing", True)

    row = db_card_set_willing_to_trade(state, ALICE, "a2", True)
    assert row["willing_to_trade"] is True
    listed = db_cards_willing_to_trade(state)
    assert [r["instance_id"] for r in listed] == ["a2"]
    assert db_cards_willing_to_trade(state, exclude_owner=ALICE) == []


def test_owner_removes_card_and_deck_rows_follow(seeded):
    state = seeded["state"]
    row = db_card_remove(state, ALICE, "a1")
    assert row["instance_id"] == "a1" and row["owner_id"] == ALICE
    assert db_card_get(state, "a1") is None
    assert db_deck_cards(state, seeded["alice_deck"]) == []


def test_remove_requires_owner_or_capability(seeded):
    state = seeded["state"]
    with pytest.raises(PermissionDeniedError):
        db_card_remove(state, BOB, "a2")
    assert db_card_owner(state, "a2") == ALICE

    db_card_remove(state, "9999", "a2", capability=SystemCapability("admin"))
    assert db_card_owner(state, "a2") is None

    with pytest.raises(NotFoundError):
        db_card_remove(state, ALICE, "a2")
