import sqlite3, json, uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Tuple, List, Dict, Any, Iterator

from tradepost.state import AppState
from tradepost.constants import STATUS_PENDING, NOTIFICATION_KINDS
from tradepost.errors import NotFoundError, PermissionDeniedError, InvalidArgumentError
from tradepost.util_norm import blank_to_none, normalize_party_id

@contextmanager
def connect(state: AppState, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """
    One unit of work: commits on clean exit, rolls back on any exception, always closes.
    immediate=True takes the write lock up front (BEGIN IMMEDIATE) so a read-check-write
    sequence cannot interleave with another writer.
    """
    c = sqlite3.connect(state.db_path, timeout=state.busy_timeout)
    c.execute("PRAGMA foreign_keys = ON;")
    try:
        with c:
            if immediate:
                c.execute("BEGIN IMMEDIATE")
            yield c
    finally:
        c.close()

@contextmanager
def _use(state: AppState, connection: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
    if connection is not None:
        yield connection
        return
    with connect(state) as c:
        yield c

def _query_all(conn: sqlite3.Connection, sql: str, params=()) -> List[dict]:
    cur = conn.execute(sql, params)
    cols = [d[0] for d in cur.description] if cur.description else []
    return [dict(zip(cols, row)) for row in cur.fetchall()]

def _query_one(conn: sqlite3.Connection, sql: str, params=()) -> dict | None:
    cur = conn.execute(sql, params)
    cols = [d[0] for d in cur.description] if cur.description else []
    row = cur.fetchone()
    return dict(zip(cols, row)) if row else None

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")

def _add_missing_columns(conn: sqlite3.Connection, table: str, columns: List[Tuple[str, str]]):
    for col, ddl in columns:
        try:
            conn.execute(f"SELECT {col} FROM {table} LIMIT 1")
        except sqlite3.OperationalError:
            conn.execute(ddl)


# ---- Card instances + decks: schema ------------------------------------------

def db_init(state: AppState):
    with connect(state) as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS card_instances (
            instance_id      TEXT NOT NULL PRIMARY KEY,
            owner_id         TEXT NOT NULL,
            card_name        TEXT NOT NULL,
            card_set         TEXT,
            card_rarity      TEXT,
            willing_to_trade INTEGER NOT NULL DEFAULT 0,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS ix_card_instances_owner ON card_instances(owner_id);")
        conn.execute("""
        CREATE TABLE IF NOT EXISTS decks (
            deck_id    TEXT NOT NULL PRIMARY KEY,
            owner_id   TEXT NOT NULL,
            name       TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (owner_id, name)
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS deck_cards (
            deck_id     TEXT NOT NULL REFERENCES decks(deck_id) ON DELETE CASCADE,
            instance_id TEXT NOT NULL REFERENCES card_instances(instance_id) ON DELETE CASCADE,
            added_at    TEXT NOT NULL,
            PRIMARY KEY (deck_id, instance_id)
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS ix_deck_cards_instance ON deck_cards(instance_id);")


# ---- Ownership store -----------------------------------------------------------

@dataclass(frozen=True)
class SystemCapability:
    """Grant held by an internal service (trade engine, admin tools) to act on any party's cards and decks."""
    name: str


def db_card_grant(state: AppState, owner_id, *, card_name: str, card_set: str = "",
                  card_rarity: str = "", instance_id: str | None = None) -> str:
    """Mint a new card instance for owner_id. Returns the instance id."""
    name = (card_name or "").strip()
    if not name:
        raise InvalidArgumentError("Card name is required.")
    owner = normalize_party_id(owner_id)
    if not owner:
        raise InvalidArgumentError("Owner is required.")
    iid = blank_to_none(instance_id) or uuid.uuid4().hex
    now = _now_iso()
    with connect(state) as conn:
        try:
            conn.execute("""
                INSERT INTO card_instances (instance_id, owner_id, card_name, card_set, card_rarity,
                                            willing_to_trade, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
            """, (iid, owner, name, (card_set or "").strip(), (card_rarity or "").strip(), now, now))
        except sqlite3.IntegrityError as e:
            raise InvalidArgumentError(f"Card instance {iid} already exists.", {"instance_id": iid}) from e
    return iid

def db_card_get(state: AppState, instance_id: str, *, connection: sqlite3.Connection | None = None) -> dict | None:
    with _use(state, connection) as conn:
        row = _query_one(conn, """
            SELECT instance_id, owner_id, card_name, card_set, card_rarity, willing_to_trade,
                   created_at, updated_at
              FROM card_instances WHERE instance_id=?
        """, (str(instance_id),))
    if row:
        row["willing_to_trade"] = int(row["willing_to_trade"] or 0) == 1
    return row

def db_card_owner(state: AppState, instance_id: str, *, connection: sqlite3.Connection | None = None) -> str | None:
    """Current owner of an instance, or None if the instance does not exist."""
    with _use(state, connection) as conn:
        r = conn.execute("SELECT owner_id FROM card_instances WHERE instance_id=?", (str(instance_id),)).fetchone()
    return r[0] if r else None

def db_card_transfer(state: AppState, instance_id: str, expected_from, to, *,
                     connection: sqlite3.Connection | None = None) -> tuple[bool, str]:
    """
    Compare-and-swap ownership. This is the only write path for owner_id.
    Returns (True, "") on success, (False, "not_found") if the instance is gone,
    (False, <current owner>) if it is no longer owned by expected_from.
    """
    iid = str(instance_id)
    src = normalize_party_id(expected_from)
    dst = normalize_party_id(to)
    with _use(state, connection) as conn:
        cur = conn.execute("""
            UPDATE card_instances
               SET owner_id=?, willing_to_trade=0, updated_at=?
             WHERE instance_id=? AND owner_id=?
        """, (dst, _now_iso(), iid, src))
        if cur.rowcount == 1:
            return (True, "")
        r = conn.execute("SELECT owner_id FROM card_instances WHERE instance_id=?", (iid,)).fetchone()
    if not r:
        return (False, "not_found")
    return (False, str(r[0]))

def db_cards_owned(state: AppState, owner_id, *, name_filter: str | None = None, limit: int | None = None) -> List[dict]:
    sql = """
        SELECT instance_id, owner_id, card_name, card_set, card_rarity, willing_to_trade,
               created_at, updated_at
          FROM card_instances
         WHERE owner_id=?
    """
    params: list = [normalize_party_id(owner_id)]
    if name_filter:
        sql += " AND LOWER(card_name) LIKE ?"
        params.append(f"%{name_filter.strip().lower()}%")
    sql += " ORDER BY card_set COLLATE NOCASE ASC, card_name COLLATE NOCASE ASC, instance_id ASC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    with connect(state) as conn:
        rows = _query_all(conn, sql, params)
    for r in rows:
        r["willing_to_trade"] = int(r["willing_to_trade"] or 0) == 1
    return rows

def db_card_set_willing_to_trade(state: AppState, actor_id, instance_id: str, willing: bool) -> dict:
    actor = normalize_party_id(actor_id)
    with connect(state, immediate=True) as conn:
        owner = db_card_owner(state, instance_id, connection=conn)
        if owner is None:
            raise NotFoundError(f"Card with ID {instance_id} not found", {"instance_id": str(instance_id)})
        if owner != actor:
            raise PermissionDeniedError(
                f"Card with ID {instance_id} does not belong to user {actor}",
                {"instance_id": str(instance_id), "party_id": actor},
            )
        conn.execute(
            "UPDATE card_instances SET willing_to_trade=?, updated_at=? WHERE instance_id=?",
            (1 if willing else 0, _now_iso(), str(instance_id)),
        )
        return db_card_get(state, instance_id, connection=conn)

def db_card_remove(state: AppState, actor_id, instance_id: str, *,
                   capability: SystemCapability | None = None) -> dict:
    """
    Delete a card instance. Only its owner, or a caller holding a SystemCapability,
    may do so. Deck memberships go with it (ON DELETE CASCADE). Returns the removed row.
    """
    actor = normalize_party_id(actor_id)
    with connect(state, immediate=True) as conn:
        row = db_card_get(state, instance_id, connection=conn)
        if row is None:
            raise NotFoundError(f"Card with ID {instance_id} not found", {"instance_id": str(instance_id)})
        if not isinstance(capability, SystemCapability) and row["owner_id"] != actor:
            raise PermissionDeniedError(
                f"Card with ID {instance_id} does not belong to user {actor}",
                {"instance_id": str(instance_id), "party_id": actor},
            )
        conn.execute("DELETE FROM card_instances WHERE instance_id=?", (str(instance_id),))
    return row

def db_cards_willing_to_trade(state: AppState, *, exclude_owner=None, limit: int = 50) -> List[dict]:
    sql = """
        SELECT instance_id, owner_id, card_name, card_set, card_rarity
          FROM card_instances
         WHERE willing_to_trade=1
    """
    params: list = []
    if exclude_owner is not None:
        sql += " AND owner_id<>?"
        params.append(normalize_party_id(exclude_owner))
    sql += " ORDER BY updated_at DESC LIMIT ?"
    params.append(int(limit))
    with connect(state) as conn:
        return _query_all(conn, sql, params)


# --- Trades: table + migration ---
_TRADE_COLS = """trade_id, initiator_id, receiver_id, status, initiator_json, receiver_json,
                 responded_at, created_at, updated_at"""

def db_init_trades(state: AppState):
    with connect(state) as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS trades (
            trade_id       TEXT NOT NULL PRIMARY KEY,
            initiator_id   TEXT NOT NULL,
            receiver_id    TEXT NOT NULL,
            status         TEXT NOT NULL,
            initiator_json TEXT NOT NULL,
            receiver_json  TEXT NOT NULL,
            responded_at   TEXT,
            created_at     TEXT NOT NULL,
            updated_at     TEXT NOT NULL
        );
        """)
        _add_missing_columns(conn, "trades", [
            ("responded_at", "ALTER TABLE trades ADD COLUMN responded_at TEXT"),
            ("updated_at",   "ALTER TABLE trades ADD COLUMN updated_at TEXT NOT NULL DEFAULT ''"),
        ])
        conn.execute("CREATE INDEX IF NOT EXISTS ix_trades_initiator ON trades(initiator_id, created_at);")
        conn.execute("CREATE INDEX IF NOT EXISTS ix_trades_receiver ON trades(receiver_id, created_at);")

def _trade_row(r: dict | None) -> dict | None:
    if not r:
        return None
    out = dict(r)
    out["initiator_items"] = json.loads(out.pop("initiator_json") or "[]")
    out["receiver_items"] = json.loads(out.pop("receiver_json") or "[]")
    return out

def db_trade_insert(conn: sqlite3.Connection, *, trade_id: str, initiator_id: str, receiver_id: str,
                    initiator_items: List[str], receiver_items: List[str], now: str) -> dict:
    conn.execute(f"""
        INSERT INTO trades ({_TRADE_COLS})
        VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
    """, (trade_id, initiator_id, receiver_id, STATUS_PENDING,
          json.dumps(list(initiator_items)), json.dumps(list(receiver_items)), now, now))
    return _trade_row(_query_one(conn, f"SELECT {_TRADE_COLS} FROM trades WHERE trade_id=?", (trade_id,)))

def db_trade_get(state: AppState, trade_id: str, *, connection: sqlite3.Connection | None = None) -> dict | None:
    with _use(state, connection) as conn:
        r = _query_one(conn, f"SELECT {_TRADE_COLS} FROM trades WHERE trade_id=?", (str(trade_id),))
    return _trade_row(r)

def db_trade_list_for_party(state: AppState, party_id, *, status: str | None = None,
                            limit: int | None = None) -> List[dict]:
    """Trades where party_id is initiator or receiver, newest first."""
    pid = normalize_party_id(party_id)
    sql = f"SELECT {_TRADE_COLS} FROM trades WHERE (initiator_id=? OR receiver_id=?)"
    params: list = [pid, pid]
    if status:
        sql += " AND status=?"
        params.append(status)
    sql += " ORDER BY created_at DESC, rowid DESC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    with connect(state) as conn:
        return [_trade_row(r) for r in _query_all(conn, sql, params)]

def db_trade_transition(conn: sqlite3.Connection, trade_id: str, new_status: str, *,
                        now: str, expect: str = STATUS_PENDING) -> tuple[bool, dict | str]:
    """
    Optimistic status move: only applies while the row is still at `expect`.
    Returns (True, updated_row) or (False, current_status) -- "missing" if the row is gone.
    """
    cur = conn.execute("""
        UPDATE trades
           SET status=?, responded_at=?, updated_at=?
         WHERE trade_id=? AND status=?
    """, (new_status, now, now, str(trade_id), expect))
    if cur.rowcount == 1:
        return (True, _trade_row(_query_one(conn, f"SELECT {_TRADE_COLS} FROM trades WHERE trade_id=?", (str(trade_id),))))
    r = conn.execute("SELECT status FROM trades WHERE trade_id=?", (str(trade_id),)).fetchone()
    return (False, r[0] if r else "missing")


# ---- Notifications ----------------------------------------------------------

def db_init_notifications(state: AppState):
    with connect(state) as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            notification_id TEXT NOT NULL PRIMARY KEY,
            user_id         TEXT NOT NULL,
            kind            TEXT NOT NULL,
            title           TEXT NOT NULL,
            message         TEXT NOT NULL,
            metadata_json   TEXT,
            is_read         INTEGER NOT NULL DEFAULT 0,
            created_at      TEXT NOT NULL
        );
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS ix_notifications_user ON notifications(user_id, is_read, created_at);")

def _notification_row(r: dict) -> dict:
    out = dict(r)
    try:
        out["metadata"] = json.loads(out.pop("metadata_json") or "{}")
    except (TypeError, ValueError):
        out["metadata"] = {}
    out["is_read"] = int(out.get("is_read") or 0) == 1
    return out

def db_notification_create(state: AppState, user_id, kind: str, title: str, message: str,
                           metadata: Dict[str, Any] | None = None) -> dict:
    if kind not in NOTIFICATION_KINDS:
        raise InvalidArgumentError(f"Unknown notification kind {kind!r}")
    row = {
        "notification_id": uuid.uuid4().hex,
        "user_id": normalize_party_id(user_id),
        "kind": kind,
        "title": title,
        "message": message,
        "metadata_json": json.dumps(metadata or {}),
        "is_read": 0,
        "created_at": _now_iso(),
    }
    with connect(state) as conn:
        conn.execute("""
            INSERT INTO notifications (notification_id, user_id, kind, title, message, metadata_json, is_read, created_at)
            VALUES (:notification_id, :user_id, :kind, :title, :message, :metadata_json, :is_read, :created_at)
        """, row)
    return _notification_row(row)

def db_notification_list(state: AppState, user_id, *, unread_only: bool = False, limit: int = 50) -> List[dict]:
    sql = """
        SELECT notification_id, user_id, kind, title, message, metadata_json, is_read, created_at
          FROM notifications WHERE user_id=?
    """
    params: list = [normalize_party_id(user_id)]
    if unread_only:
        sql += " AND is_read=0"
    sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    params.append(int(limit))
    with connect(state) as conn:
        return [_notification_row(r) for r in _query_all(conn, sql, params)]

def db_notification_mark_read(state: AppState, user_id, notification_id: str) -> bool:
    with connect(state) as conn:
        cur = conn.execute(
            "UPDATE notifications SET is_read=1 WHERE notification_id=? AND user_id=?",
            (str(notification_id), normalize_party_id(user_id)),
        )
        return cur.rowcount > 0

def db_notification_mark_all_read(state: AppState, user_id) -> int:
    with connect(state) as conn:
        cur = conn.execute(
            "UPDATE notifications SET is_read=1 WHERE user_id=? AND is_read=0",
            (normalize_party_id(user_id),),
        )
        return cur.rowcount or 0

def db_notification_count_unread(state: AppState, user_id) -> int:
    with connect(state) as conn:
        r = conn.execute(
            "SELECT COUNT(*) FROM notifications WHERE user_id=? AND is_read=0",
            (normalize_party_id(user_id),),
        ).fetchone()
    return int(r[0] if r else 0)
