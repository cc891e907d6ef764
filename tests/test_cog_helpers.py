import asyncio
import time

import pytest

from tradepost.constants import STATUS_PENDING
from tradepost.errors import PermissionDeniedError
from tradepost.util_norm import split_id_list, normalize_instance_ids, normalize_party_id
from tradepost.trade_engine import TradeEngine

from cogs.trade import _trade_embed, _trade_summary_line, _status_color, _error_text, run_blocking
from cogs.collection import group_and_format_rows, sections_to_embed_descriptions

from conftest import ALICE, BOB


def test_split_id_list():
    assert split_id_list("a1, b2  c3,,") == ["a1", "b2", "c3"]
    assert split_id_list("") == []
    assert split_id_list(None) == []


def test_normalizers():
    assert normalize_instance_ids([" a ", "", None, 7]) == ["a", "7"]
    assert normalize_instance_ids("a2") == ["a2"]
    assert normalize_instance_ids("") == []
    assert normalize_party_id(1001) == "1001"
    assert normalize_party_id(None) == ""


def test_trade_embed_lists_both_sides(seeded):
    state = seeded["state"]
    t = TradeEngine(state).propose(ALICE, BOB, ["a2"], ["b1", "b2"])
    emb = _trade_embed(state, t)
    assert "Pending" in emb.title
    assert "Card a2" in emb.description and "Card b2" in emb.description
    assert emb.footer.text == f"Trade ID: {t.id}"
    assert emb.color.value == _status_color(STATUS_PENDING)

    assert "→" in _trade_summary_line(t, int(ALICE))
    assert "←" in _trade_summary_line(t, int(BOB))


def test_error_text():
    assert _error_text(PermissionDeniedError("nope")) == "❌ nope"


def test_run_blocking_times_out():
    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(run_blocking(time.sleep, 0.5, timeout=0.05))
    assert asyncio.run(run_blocking(sum, [1, 2, 3])) == 6


def test_collection_sections():
    rows = [
        {"instance_id": "x2", "card_name": "Zombie", "card_set": "LOB", "card_rarity": "", "willing_to_trade": False},
        {"instance_id": "x1", "card_name": "Angel", "card_set": "LOB", "card_rarity": "Rare", "willing_to_trade": True},
        {"instance_id": "y1", "card_name": "Beast", "card_set": "", "card_rarity": "", "willing_to_trade": False},
    ]
    sections = group_and_format_rows(rows, {"x1": ["Main"]})
    assert [h for h, _ in sections] == ["LOB", "Unknown"]
    assert sections[0][1][0] == "Angel `x1` [Rare] 🤝 (in: Main)"
    assert sections[0][1][1] == "Zombie `x2`"


def test_sections_split_without_breaking_rows():
    lines = [f"line {i:03d}" for i in range(30)]
    descs = sections_to_embed_descriptions([("Set", lines)], per_embed_limit=100)
    assert len(descs) > 1
    assert descs[0].startswith("**Set**")
    assert descs[1].startswith("**Set (cont.)**")
    rows = [ln for d in descs for ln in d.splitlines() if not ln.startswith("**")]
    assert rows == lines
    assert all(len(d) <= 100 for d in descs)
