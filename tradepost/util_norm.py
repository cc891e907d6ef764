# tradepost/util_norm.py
from typing import Iterable, List

def blank_to_none(s):
    return None if s is None or str(s).strip() == "" else str(s).strip()

def normalize_party_id(raw) -> str:
    """Party ids are stored as TEXT (Discord snowflakes arrive as int)."""
    return str(raw).strip() if raw is not None else ""

def normalize_instance_ids(raw: Iterable | None) -> List[str]:
    """Strip and stringify instance ids, keeping the caller's order. Blank entries are dropped.
    A bare string is one id, not a sequence of characters.
    """
    if isinstance(raw, (str, int)):
        raw = [raw]
    out: List[str] = []
    for v in raw or []:
        s = blank_to_none(v)
        if s is not None:
            out.append(s)
    return out

def split_id_list(raw: str | None) -> List[str]:
    """'a, b  c' -> ['a', 'b', 'c'] (commas and/or whitespace)."""
    return normalize_instance_ids((raw or "").replace(",", " ").split())
