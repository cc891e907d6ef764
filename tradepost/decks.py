"""Deck membership store.

A deck is a named, owner-curated collection of card instances. Membership is
independent of ownership: transferring a card does not touch deck_cards, which
is why the trade engine strips cards out of decks itself (and db_card_reassign
does the same for admin moves).

Removal normally requires the deck owner. Internal services (trade engine, admin)
pass a SystemCapability instead of pretending to be the owner.
"""
from __future__ import annotations

import sqlite3, uuid
from typing import List, Set

from tradepost.state import AppState
from tradepost.db import (
    connect, _use, _query_all, _query_one, _now_iso, db_card_owner,
    SystemCapability, db_card_transfer,
)
from tradepost.errors import NotFoundError, PermissionDeniedError, InvalidArgumentError
from tradepost.util_norm import normalize_party_id

MAX_DECK_NAME = 64

TRADE_ENGINE_CAPABILITY = SystemCapability("trade-engine")


def db_deck_create(state: AppState, owner_id, name: str) -> dict:
    owner = normalize_party_id(owner_id)
    clean = " ".join((name or "").split())
    if not clean:
        raise InvalidArgumentError("Deck name is required.")
    if len(clean) > MAX_DECK_NAME:
        raise InvalidArgumentError(f"Deck name is limited to {MAX_DECK_NAME} characters.")
    row = {"deck_id": uuid.uuid4().hex, "owner_id": owner, "name": clean, "created_at": _now_iso()}
    with connect(state) as conn:
        try:
            conn.execute(
                "INSERT INTO decks (deck_id, owner_id, name, created_at) VALUES (:deck_id, :owner_id, :name, :created_at)",
                row,
            )
        except sqlite3.IntegrityError as e:
            raise InvalidArgumentError(f"You already have a deck named {clean!r}.") from e
    return row

def db_deck_get(state: AppState, deck_id: str, *, connection: sqlite3.Connection | None = None) -> dict | None:
    with _use(state, connection) as conn:
        return _query_one(conn, "SELECT deck_id, owner_id, name, created_at FROM decks WHERE deck_id=?", (str(deck_id),))

def db_deck_list(state: AppState, owner_id) -> List[dict]:
    with connect(state) as conn:
        return _query_all(conn, """
            SELECT d.deck_id, d.owner_id, d.name, d.created_at, COUNT(dc.instance_id) AS card_count
              FROM decks d
              LEFT JOIN deck_cards dc ON dc.deck_id = d.deck_id
             WHERE d.owner_id=?
             GROUP BY d.deck_id
             ORDER BY d.name COLLATE NOCASE ASC
        """, (normalize_party_id(owner_id),))

def db_deck_cards(state: AppState, deck_id: str) -> List[str]:
    with connect(state) as conn:
        rows = conn.execute(
            "SELECT instance_id FROM deck_cards WHERE deck_id=? ORDER BY added_at ASC, instance_id ASC",
            (str(deck_id),),
        ).fetchall()
    return [r[0] for r in rows]

def db_decks_containing(state: AppState, instance_id: str, *,
                        connection: sqlite3.Connection | None = None) -> Set[str]:
    with _use(state, connection) as conn:
        rows = conn.execute("SELECT deck_id FROM deck_cards WHERE instance_id=?", (str(instance_id),)).fetchall()
    return {r[0] for r in rows}

def db_deck_add_card(state: AppState, actor_id, deck_id: str, instance_id: str) -> bool:
    """Put an owned card into one of the actor's decks. Returns False if it was already there."""
    actor = normalize_party_id(actor_id)
    with connect(state, immediate=True) as conn:
        deck = db_deck_get(state, deck_id, connection=conn)
        if not deck:
            raise NotFoundError(f"Deck with ID {deck_id} not found", {"deck_id": str(deck_id)})
        if deck["owner_id"] != actor:
            raise PermissionDeniedError("Only the deck owner can add cards to this deck", {"deck_id": str(deck_id)})
        owner = db_card_owner(state, instance_id, connection=conn)
        if owner is None:
            raise NotFoundError(f"Card with ID {instance_id} not found", {"instance_id": str(instance_id)})
        if owner != actor:
            raise PermissionDeniedError(
                f"Card with ID {instance_id} does not belong to user {actor}",
                {"instance_id": str(instance_id), "deck_id": str(deck_id)},
            )
        cur = conn.execute(
            "INSERT OR IGNORE INTO deck_cards (deck_id, instance_id, added_at) VALUES (?, ?, ?)",
            (str(deck_id), str(instance_id), _now_iso()),
        )
        return cur.rowcount > 0

def db_deck_remove_card(state: AppState, deck_id: str, instance_id: str, *,
                        actor_id=None, capability: SystemCapability | None = None,
                        connection: sqlite3.Connection | None = None) -> bool:
    """
    Idempotent: returns True if a membership row was deleted, False if the card
    was not in the deck. Caller must be the deck owner or hold a SystemCapability.
    """
    with _use(state, connection) as conn:
        deck = db_deck_get(state, deck_id, connection=conn)
        if not deck:
            if isinstance(capability, SystemCapability):
                return False
            raise NotFoundError(f"Deck with ID {deck_id} not found", {"deck_id": str(deck_id)})
        if not isinstance(capability, SystemCapability) and deck["owner_id"] != normalize_party_id(actor_id):
            raise PermissionDeniedError("Only the deck owner can remove cards from this deck", {"deck_id": str(deck_id)})
        cur = conn.execute(
            "DELETE FROM deck_cards WHERE deck_id=? AND instance_id=?",
            (str(deck_id), str(instance_id)),
        )
        return cur.rowcount > 0

def db_card_reassign(state: AppState, instance_id: str, expected_from, to, *,
                     capability: SystemCapability) -> tuple[bool, str, List[str]]:
    """
    Move one card to a new owner and pull it out of every deck, in one transaction.
    Returns (True, "", stripped_deck_ids) or the failed transfer's (False, reason, []).
    """
    with connect(state, immediate=True) as conn:
        ok, reason = db_card_transfer(state, instance_id, expected_from, to, connection=conn)
        if not ok:
            return (False, reason, [])
        stripped = [
            deck_id for deck_id in sorted(db_decks_containing(state, instance_id, connection=conn))
            if db_deck_remove_card(state, deck_id, instance_id, capability=capability, connection=conn)
        ]
    return (True, "", stripped)
