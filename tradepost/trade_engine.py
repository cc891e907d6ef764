# tradepost/trade_engine.py
from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from tradepost.state import AppState
from tradepost.constants import (
    STATUS_PENDING, STATUS_ACCEPTED, STATUS_REJECTED, STATUS_CANCELED, TERMINAL_STATUSES,
    TRADE_OFFER, TRADE_ACCEPTED, TRADE_REJECTED, TRADE_CANCELLED,
    TRADE_MAX_ITEMS_PER_SIDE,
)
from tradepost.db import (
    connect, _now_iso,
    db_card_owner, db_card_transfer,
    db_trade_insert, db_trade_get, db_trade_list_for_party, db_trade_transition,
)
from tradepost.decks import (
    SystemCapability, TRADE_ENGINE_CAPABILITY,
    db_decks_containing, db_deck_remove_card,
)
from tradepost.errors import (
    NotFoundError, PermissionDeniedError, InvalidArgumentError, InvalidStateError, ConflictError,
)
from tradepost.util_norm import normalize_party_id, normalize_instance_ids

logger = logging.getLogger(__name__)


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


@dataclass(frozen=True)
class Trade:
    id: str
    initiator_id: str
    receiver_id: str
    initiator_items: Tuple[str, ...]
    receiver_items: Tuple[str, ...]
    status: str
    responded_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Trade":
        return cls(
            id=row["trade_id"],
            initiator_id=row["initiator_id"],
            receiver_id=row["receiver_id"],
            initiator_items=tuple(row["initiator_items"]),
            receiver_items=tuple(row["receiver_items"]),
            status=row["status"],
            responded_at=_parse_ts(row.get("responded_at")),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row.get("updated_at") or row["created_at"]),
        )

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def all_items(self) -> Tuple[str, ...]:
        return self.initiator_items + self.receiver_items

    def involves(self, party_id) -> bool:
        pid = normalize_party_id(party_id)
        return pid in (self.initiator_id, self.receiver_id)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["initiator_items"] = list(self.initiator_items)
        d["receiver_items"] = list(self.receiver_items)
        for k in ("responded_at", "created_at", "updated_at"):
            d[k] = d[k].isoformat() if d[k] else None
        return d


class Notifier(Protocol):
    def notify(self, recipient_id, kind: str, title: str, message: str, *,
               metadata: Optional[Dict[str, Any]] = None) -> bool: ...


def check_pending(trade: Trade) -> Tuple[bool, str]:
    """(True, "") while the trade can still move, else (False, <current status>)."""
    if trade.status == STATUS_PENDING:
        return (True, "")
    return (False, trade.status)


class TradeEngine:
    """
    Propose / respond / cancel card-instance trades between two parties.

    Every mutating call is one sqlite write transaction (BEGIN IMMEDIATE):
    ownership checks, deck stripping, transfers and the status update commit
    together or not at all. Notifications go out only after commit.
    Calls are blocking; async callers should run them in a worker thread.
    """

    def __init__(self, state: AppState, notifier: Optional[Notifier] = None, *,
                 max_items_per_side: int = TRADE_MAX_ITEMS_PER_SIDE,
                 capability: SystemCapability = TRADE_ENGINE_CAPABILITY):
        self.state = state
        self.notifier = notifier
        self.max_items_per_side = int(max_items_per_side)
        self.capability = capability

    # ---------- Proposal ----------
    def propose(self, initiator_id, receiver_id, initiator_items: Iterable[str],
                receiver_items: Iterable[str]) -> Trade:
        initiator = normalize_party_id(initiator_id)
        receiver = normalize_party_id(receiver_id)
        give = normalize_instance_ids(initiator_items)
        get = normalize_instance_ids(receiver_items)
        self._validate_proposal(initiator, receiver, give, get)

        trade_id = str(uuid.uuid4())
        with connect(self.state, immediate=True) as conn:
            self._check_ownership(conn, initiator, give)
            self._check_ownership(conn, receiver, get)
            self._strip_from_decks(conn, give + get)
            row = db_trade_insert(
                conn, trade_id=trade_id, initiator_id=initiator, receiver_id=receiver,
                initiator_items=give, receiver_items=get, now=_now_iso(),
            )
        trade = Trade.from_row(row)
        logger.info("Trade %s proposed: %s -> %s (%d for %d)",
                    trade.id, initiator, receiver, len(give), len(get))
        self._notify(trade, trade.receiver_id, TRADE_OFFER,
                     "New Trade Offer", "You have received a new trade offer.")
        return trade

    def _validate_proposal(self, initiator: str, receiver: str, give: List[str], get: List[str]) -> None:
        if not initiator or not receiver:
            raise InvalidArgumentError("Both parties are required.")
        if initiator == receiver:
            raise InvalidArgumentError("You cannot trade with yourself.", {"party_id": initiator})
        if not give:
            raise InvalidArgumentError("Offer at least one card.")
        if not get:
            raise InvalidArgumentError("Request at least one card.")
        for label, items in (("offered", give), ("requested", get)):
            if len(items) > self.max_items_per_side:
                raise InvalidArgumentError(
                    f"At most {self.max_items_per_side} {label} cards per trade.",
                    {"count": len(items)},
                )
            seen = set()
            for iid in items:
                if iid in seen:
                    raise InvalidArgumentError(f"Card {iid} is listed twice.", {"instance_id": iid})
                seen.add(iid)
        wanted = set(get)
        overlap = [iid for iid in give if iid in wanted]
        if overlap:
            raise InvalidArgumentError(
                f"Card {overlap[0]} cannot be on both sides of a trade.",
                {"instance_id": overlap[0]},
            )

    def _check_ownership(self, conn: sqlite3.Connection, party_id: str, items: List[str]) -> None:
        for iid in items:
            owner = db_card_owner(self.state, iid, connection=conn)
            if owner is None:
                raise NotFoundError(f"Card with ID {iid} not found", {"instance_id": iid})
            if owner != party_id:
                raise PermissionDeniedError(
                    f"Card with ID {iid} does not belong to user {party_id}",
                    {"instance_id": iid, "party_id": party_id},
                )

    # ---------- Deck membership ----------
    def _strip_from_decks(self, conn: sqlite3.Connection, items: Iterable[str]) -> List[Tuple[str, str]]:
        """Take every listed card out of every deck holding it. Safe to repeat."""
        removed: List[Tuple[str, str]] = []
        for iid in items:
            for deck_id in sorted(db_decks_containing(self.state, iid, connection=conn)):
                if db_deck_remove_card(self.state, deck_id, iid, capability=self.capability, connection=conn):
                    removed.append((deck_id, iid))
        if removed:
            logger.info("Removed %d card(s) from decks: %s", len(removed),
                        ", ".join(f"{iid}@{deck_id}" for deck_id, iid in removed))
        return removed

    # ---------- Response ----------
    def respond(self, responder_id, trade_id: str, accept: bool) -> Trade:
        responder = normalize_party_id(responder_id)
        tid = self._normalize_trade_id(trade_id)
        new_status = STATUS_ACCEPTED if accept else STATUS_REJECTED

        with connect(self.state, immediate=True) as conn:
            trade = self._load(conn, tid)
            if responder != trade.receiver_id:
                raise PermissionDeniedError(
                    "Only the trade receiver can respond to this trade",
                    {"trade_id": tid, "party_id": responder},
                )
            ok, current = check_pending(trade)
            if not ok:
                raise self._invalid_state(tid, current)

            self._strip_from_decks(conn, trade.all_items)
            if accept:
                self._exchange(conn, trade)

            ok, result = db_trade_transition(conn, tid, new_status, now=_now_iso())
            if not ok:
                raise self._invalid_state(tid, result)
            updated = Trade.from_row(result)

        logger.info("Trade %s %s by %s", tid, new_status, responder)
        if accept:
            self._notify(updated, updated.initiator_id, TRADE_ACCEPTED,
                         "Trade Accepted", "Your trade offer has been accepted.")
        else:
            self._notify(updated, updated.initiator_id, TRADE_REJECTED,
                         "Trade Rejected", "Your trade offer has been rejected.")
        return updated

    # ---------- Atomic exchange ----------
    def _exchange(self, conn: sqlite3.Connection, trade: Trade) -> None:
        """
        Move every card to the other party in list order, initiator side first.
        Must run inside the caller's transaction: the first failed transfer raises,
        and the rollback discards the transfers already applied.
        """
        for iid in trade.initiator_items:
            self._transfer(conn, trade, iid, trade.initiator_id, trade.receiver_id)
        for iid in trade.receiver_items:
            self._transfer(conn, trade, iid, trade.receiver_id, trade.initiator_id)

    def _transfer(self, conn: sqlite3.Connection, trade: Trade, iid: str, src: str, dst: str) -> None:
        ok, reason = db_card_transfer(self.state, iid, src, dst, connection=conn)
        if ok:
            return
        details = {"trade_id": trade.id, "instance_id": iid, "expected_owner": src}
        if reason == "not_found":
            raise NotFoundError(f"Card with ID {iid} no longer exists; trade {trade.id} was not applied", details)
        details["current_owner"] = reason
        logger.warning("Trade %s blocked: card %s moved from %s to %s since proposal", trade.id, iid, src, reason)
        raise ConflictError(
            f"Card with ID {iid} is no longer owned by user {src}; trade {trade.id} was not applied",
            details,
        )

    # ---------- Cancel ----------
    def cancel(self, canceler_id, trade_id: str) -> Trade:
        canceler = normalize_party_id(canceler_id)
        tid = self._normalize_trade_id(trade_id)

        with connect(self.state, immediate=True) as conn:
            trade = self._load(conn, tid)
            if canceler != trade.initiator_id:
                raise PermissionDeniedError(
                    "Only the trade initiator can cancel this trade",
                    {"trade_id": tid, "party_id": canceler},
                )
            ok, current = check_pending(trade)
            if not ok:
                raise self._invalid_state(tid, current)
            ok, result = db_trade_transition(conn, tid, STATUS_CANCELED, now=_now_iso())
            if not ok:
                raise self._invalid_state(tid, result)
            updated = Trade.from_row(result)

        logger.info("Trade %s canceled by %s", tid, canceler)
        self._notify(updated, updated.receiver_id, TRADE_CANCELLED,
                     "Trade Canceled", "A trade offer has been canceled.")
        return updated

    # ---------- Queries ----------
    def get(self, trade_id: str) -> Trade:
        tid = self._normalize_trade_id(trade_id)
        row = db_trade_get(self.state, tid)
        if not row:
            raise NotFoundError(f"Trade with ID {tid} not found", {"trade_id": tid})
        return Trade.from_row(row)

    def list_for_party(self, party_id, *, limit: Optional[int] = None) -> List[Trade]:
        return [Trade.from_row(r) for r in db_trade_list_for_party(self.state, party_id, limit=limit)]

    def list_pending(self, party_id, *, limit: Optional[int] = None) -> List[Trade]:
        rows = db_trade_list_for_party(self.state, party_id, status=STATUS_PENDING, limit=limit)
        return [Trade.from_row(r) for r in rows]

    # ---------- helpers ----------
    @staticmethod
    def _normalize_trade_id(trade_id) -> str:
        tid = str(trade_id or "").strip()
        if not tid:
            raise InvalidArgumentError("Trade ID is required.")
        return tid

    def _load(self, conn: sqlite3.Connection, tid: str) -> Trade:
        row = db_trade_get(self.state, tid, connection=conn)
        if not row:
            raise NotFoundError(f"Trade with ID {tid} not found", {"trade_id": tid})
        return Trade.from_row(row)

    @staticmethod
    def _invalid_state(tid: str, status: str) -> InvalidStateError:
        if status == "missing":
            return InvalidStateError(f"Trade {tid} no longer exists", {"trade_id": tid, "status": status})
        return InvalidStateError(f"This trade is already {status}", {"trade_id": tid, "status": status})

    def _notify(self, trade: Trade, recipient_id: str, kind: str, title: str, message: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(recipient_id, kind, title, message,
                                 metadata={"trade_id": trade.id, "status": trade.status})
        except Exception:
            logger.warning("Notification %s for trade %s failed", kind, trade.id, exc_info=True)
