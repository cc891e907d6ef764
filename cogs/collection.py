# cogs/collection.py
import os, logging, discord
from collections import defaultdict
from typing import Dict, List, Tuple
from discord.ext import commands
from discord import app_commands

from tradepost.state import AppState
from tradepost.db import (
    db_cards_owned, db_card_set_willing_to_trade, db_cards_willing_to_trade, db_card_remove,
    db_notification_list, db_notification_mark_read, db_notification_mark_all_read,
    db_notification_count_unread,
)
from tradepost.decks import db_deck_list, db_deck_cards
from tradepost.errors import TradeError

GUILD_ID = int(os.getenv("GUILD_ID", "0") or 0)
GUILD = discord.Object(id=GUILD_ID) if GUILD_ID else None

logger = logging.getLogger(__name__)

NOTIFICATIONS_PAGE = 25


def deck_names_by_instance(state: AppState, owner_id) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = defaultdict(list)
    for d in db_deck_list(state, owner_id):
        for iid in db_deck_cards(state, d["deck_id"]):
            out[iid].append(d["name"])
    return out

# ---------- Build lines and embed descriptions ----------
def group_and_format_rows(rows: List[dict], decks: Dict[str, List[str]]) -> List[Tuple[str, List[str]]]:
    """
    rows: card instance dicts
    -> [(set header, ["<name> `<instance_id>` [rarity] 🤝 (in: deck)", ...]), ...]
    """
    groups: Dict[str, List[dict]] = defaultdict(list)
    for r in rows:
        groups[(r.get("card_set") or "Unknown").strip() or "Unknown"].append(r)

    sections: List[Tuple[str, List[str]]] = []
    for header in sorted(groups.keys(), key=lambda s: s.lower()):
        lines: List[str] = []
        for r in sorted(groups[header], key=lambda x: (x["card_name"].lower(), x["instance_id"])):
            line = f"{r['card_name']} `{r['instance_id']}`"
            if r.get("card_rarity"):
                line += f" [{r['card_rarity']}]"
            if r.get("willing_to_trade"):
                line += " 🤝"
            in_decks = decks.get(r["instance_id"])
            if in_decks:
                line += f" (in: {', '.join(sorted(in_decks))})"
            lines.append(line)
        sections.append((header, lines))
    return sections

def sections_to_embed_descriptions(sections: List[Tuple[str, List[str]]], per_embed_limit: int = 4096) -> List[str]:
    """
    Turns sections into <=per_embed_limit description blocks, never splitting a row.
    Continuations label the header with (cont.).
    """
    blocks: List[str] = []
    cur_lines: List[str] = []
    cur_len = 0

    def flush():
        nonlocal cur_lines, cur_len
        if cur_lines:
            blocks.append("\n".join(cur_lines).rstrip())
            cur_lines, cur_len = [], 0

    for header, lines in sections:
        printed_once = False
        for line in lines:
            if cur_lines and cur_len + len(line) + 1 > per_embed_limit:
                flush()
            if not cur_lines:
                hdr = f"**{header}**" if not printed_once else f"**{header} (cont.)**"
                cur_lines.append(hdr)
                cur_len += len(hdr) + 1
                printed_once = True
            cur_lines.append(line)
            cur_len += len(line) + 1
        flush()
    return [b for b in blocks if b.strip()]


class Collection(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.state: AppState = bot.state

    async def ac_my_card(self, interaction: discord.Interaction, current: str):
        cur = (current or "").lower()
        out: List[app_commands.Choice[str]] = []
        for row in db_cards_owned(self.state, interaction.user.id, limit=200):
            flag = " 🤝" if row["willing_to_trade"] else ""
            label = f"{row['card_name']} [{row.get('card_rarity') or '?'}]{flag} ({row['instance_id'][:8]})"
            if cur and cur not in label.lower() and cur not in row["instance_id"].lower():
                continue
            out.append(app_commands.Choice(name=label[:100], value=row["instance_id"]))
            if len(out) >= 25:
                break
        return out

    @app_commands.command(name="collection", description="List a user's card instances")
    @app_commands.guilds(GUILD)
    @app_commands.describe(user="User to view (optional)")
    async def collection(self, interaction: discord.Interaction, user: discord.User = None):
        await interaction.response.defer(ephemeral=True)
        target = user or interaction.user

        rows = db_cards_owned(self.state, target.id)
        if not rows:
            await interaction.edit_original_response(content=f"{target.mention} has no cards.")
            return

        # Deck membership is private to the owner.
        decks = deck_names_by_instance(self.state, target.id) if target.id == interaction.user.id else {}
        descs = sections_to_embed_descriptions(group_and_format_rows(rows, decks), per_embed_limit=3900)

        title = f"Collection for {getattr(target, 'display_name', target.name)} ({len(rows)} cards)"
        embeds = [discord.Embed(title=title if i == 0 else None, description=d) for i, d in enumerate(descs)]
        # Discord caps one message at 10 embeds
        await interaction.edit_original_response(content=None, embeds=embeds[:10])
        for i in range(10, len(embeds), 10):
            await interaction.followup.send(embeds=embeds[i:i + 10], ephemeral=True)

    @app_commands.command(name="card_willing", description="Mark one of your cards as open (or closed) to trade offers")
    @app_commands.guilds(GUILD)
    @app_commands.describe(card="Your card", willing="Open to trade offers?")
    @app_commands.autocomplete(card=ac_my_card)
    async def card_willing(self, interaction: discord.Interaction, card: str, willing: bool = True):
        try:
            row = db_card_set_willing_to_trade(self.state, interaction.user.id, card, willing)
        except TradeError as e:
            await interaction.response.send_message(f"❌ {e.message}", ephemeral=True); return
        state_txt = "open to trades 🤝" if row["willing_to_trade"] else "no longer listed for trade"
        await interaction.response.send_message(f"✅ **{row['card_name']}** is {state_txt}.", ephemeral=True)

    @app_commands.command(name="trade_board", description="Cards other players are willing to trade")
    @app_commands.guilds(GUILD)
    async def trade_board(self, interaction: discord.Interaction):
        rows = db_cards_willing_to_trade(self.state, exclude_owner=interaction.user.id, limit=50)
        if not rows:
            await interaction.response.send_message("Nobody has listed cards for trade yet.", ephemeral=True); return
        lines = [
            f"<@{r['owner_id']}> • {r['card_name']} [{r.get('card_rarity') or '?'}] `{r['instance_id']}`"
            for r in rows
        ]
        emb = discord.Embed(title="Trade Board", description="\n".join(lines)[:4000], color=0x2b6cb0)
        await interaction.response.send_message(embed=emb, ephemeral=True)

    @app_commands.command(name="card_remove", description="Permanently delete one of your cards")
    @app_commands.guilds(GUILD)
    @app_commands.describe(card="Your card")
    @app_commands.autocomplete(card=ac_my_card)
    async def card_remove(self, interaction: discord.Interaction, card: str):
        try:
            row = db_card_remove(self.state, interaction.user.id, card)
        except TradeError as e:
            await interaction.response.send_message(f"❌ {e.message}", ephemeral=True); return
        logger.info("User %s removed card %s", interaction.user.id, card)
        await interaction.response.send_message(f"🗑️ Removed **{row['card_name']}** (`{card}`).", ephemeral=True)

    @app_commands.command(name="notifications", description="Show your unread notifications")
    @app_commands.guilds(GUILD)
    @app_commands.describe(clear="Mark every unread notification read, including ones not shown")
    async def notifications(self, interaction: discord.Interaction, clear: bool = False):
        unread = db_notification_count_unread(self.state, interaction.user.id)
        if not unread:
            await interaction.response.send_message("📭 No unread notifications.", ephemeral=True); return
        items = db_notification_list(self.state, interaction.user.id, unread_only=True, limit=NOTIFICATIONS_PAGE)
        emb = discord.Embed(title=f"Notifications ({len(items)} of {unread} unread)", color=0x2b6cb0)
        for n in items:
            emb.add_field(name=f"{n['title']} • {n['created_at'][:16].replace('T', ' ')}",
                          value=n["message"][:200] or "-", inline=False)
        if clear:
            marked = db_notification_mark_all_read(self.state, interaction.user.id)
        else:
            marked = sum(1 for n in items if db_notification_mark_read(self.state, interaction.user.id, n["notification_id"]))
            if unread > len(items):
                emb.set_footer(text="Run /notifications again for older ones, or use clear:True.")
        logger.info("Marked %d notifications read for user_id=%s", marked, interaction.user.id)
        await interaction.response.send_message(embed=emb, ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(Collection(bot))
