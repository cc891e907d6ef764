# cogs/trade.py
import os
import asyncio
import logging
from typing import List, Optional

import discord
from discord.ext import commands
from discord import app_commands

from tradepost.state import AppState
from tradepost.constants import (
    STATUS_PENDING, STATUS_ACCEPTED, TRADE_REQUEST_TIMEOUT, TRADE_VIEW_TIMEOUT, TRADE_MAX_ITEMS_PER_SIDE,
)
from tradepost.db import db_card_get, db_cards_owned
from tradepost.errors import TradeError
from tradepost.notify import TradeNotifier
from tradepost.trade_engine import Trade, TradeEngine
from tradepost.util_norm import split_id_list

# ---- Guild scoping ----
GUILD_ID = int(os.getenv("GUILD_ID", "0") or 0)
GUILD = discord.Object(id=GUILD_ID) if GUILD_ID else None

logger = logging.getLogger(__name__)


# ---------------- Formatting helpers ----------------
def _fmt_card_line(state: AppState, instance_id: str) -> str:
    card = db_card_get(state, instance_id)
    if not card:
        return f"`{instance_id}` (card no longer exists)"
    rarity = card.get("card_rarity") or "?"
    cset = card.get("card_set") or "?"
    return f"`{instance_id}` {card['card_name']} ({rarity}, set:{cset})"

def _status_color(status: str) -> int:
    if status == STATUS_PENDING:
        return 0x2b6cb0
    if status == STATUS_ACCEPTED:
        return 0x38a169
    return 0xe53e3e

def _trade_embed(state: AppState, t: Trade) -> discord.Embed:
    give_str = "\n".join(f"• {_fmt_card_line(state, iid)}" for iid in t.initiator_items) or "• (nothing)"
    get_str  = "\n".join(f"• {_fmt_card_line(state, iid)}" for iid in t.receiver_items) or "• (nothing)"
    emb = discord.Embed(
        title=f"Trade {t.id[:8]} — {t.status.title()}",
        description=(
            f"**From:** <@{t.initiator_id}>\n"
            f"**To:** <@{t.receiver_id}>\n\n"
            f"**Initiator gives:**\n{give_str}\n\n"
            f"**Receiver gives:**\n{get_str}"
        ),
        color=_status_color(t.status),
    )
    emb.set_footer(text=f"Trade ID: {t.id}")
    return emb

def _trade_summary_line(t: Trade, viewer_id: int) -> str:
    other = t.receiver_id if str(viewer_id) == t.initiator_id else t.initiator_id
    direction = "→" if str(viewer_id) == t.initiator_id else "←"
    return (f"`{t.id}` {direction} <@{other}> — **{t.status}** "
            f"({len(t.initiator_items)} for {len(t.receiver_items)}, {t.created_at:%Y-%m-%d})")

def _error_text(e: TradeError) -> str:
    return f"❌ {e.message}"


async def run_blocking(fn, *args, timeout: float = TRADE_REQUEST_TIMEOUT, **kwargs):
    """
    Run a blocking engine call in a worker thread. If the caller gives up
    (timeout / cancellation) the thread still finishes its transaction.
    """
    return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=timeout)


# --------------- Respond UI ---------------
class TradeResponseView(discord.ui.View):
    def __init__(self, cog: "Trades", trade_id: str, receiver_id: str, timeout: float = TRADE_VIEW_TIMEOUT):
        super().__init__(timeout=timeout)
        self.cog = cog
        self.trade_id = trade_id
        self.receiver_id = str(receiver_id)
        self.message: Optional[discord.Message] = None

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if str(interaction.user.id) != self.receiver_id:
            await interaction.response.send_message("Only the trade receiver can respond.", ephemeral=True)
            return False
        return True

    async def on_timeout(self):
        # Buttons expire; the trade itself stays pending until answered or canceled.
        for child in self.children:
            child.disabled = True
        if self.message is not None:
            try:
                await self.message.edit(view=self)
            except discord.HTTPException:
                logger.debug("Could not disable buttons for trade %s", self.trade_id)

    async def _finish(self, interaction: discord.Interaction, accept: bool):
        t = await self.cog.respond_and_reply(interaction, self.trade_id, accept)
        if t is not None:
            self.stop()
            try:
                await interaction.message.edit(embed=_trade_embed(self.cog.state, t), view=None)
            except discord.HTTPException:
                logger.debug("Could not update trade message for %s", self.trade_id)

    @discord.ui.button(label="Accept", style=discord.ButtonStyle.success)
    async def accept_btn(self, interaction: discord.Interaction, _: discord.ui.Button):
        await self._finish(interaction, True)

    @discord.ui.button(label="Reject", style=discord.ButtonStyle.danger)
    async def reject_btn(self, interaction: discord.Interaction, _: discord.ui.Button):
        await self._finish(interaction, False)


# --------------- Cog ---------------
class Trades(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.state: AppState = self.bot.state
        engine = getattr(self.bot, "trade_engine", None)
        if engine is None:
            engine = TradeEngine(self.state, getattr(self.bot, "notifier", None) or TradeNotifier(self.state))
        self.engine: TradeEngine = engine

    # ---- Autocomplete: OWNED card instances of the caller ----
    async def ac_card_owned(self, interaction: discord.Interaction, current: str):
        return self._owned_choices(interaction.user.id, current)

    async def ac_card_target(self, interaction: discord.Interaction, current: str):
        """Suggest cards owned by the chosen `to_user`, if Discord already sent it."""
        target = getattr(interaction.namespace, "to_user", None)
        if target is None:
            return []
        return self._owned_choices(target.id, current)

    def _owned_choices(self, owner_id: int, current: str) -> List[app_commands.Choice[str]]:
        # Multi-card fields are comma separated; complete only the last token.
        head, _, tail = (current or "").rpartition(",")
        prefix = f"{head}," if head else ""
        already = set(split_id_list(head))
        choices: List[app_commands.Choice[str]] = []
        for row in db_cards_owned(self.state, owner_id, name_filter=None, limit=200):
            iid = row["instance_id"]
            if iid in already:
                continue
            label = f"{row['card_name']} — set:{row.get('card_set') or '?'} [{row.get('card_rarity') or '?'}]"
            needle = tail.strip().lower()
            if needle and needle not in label.lower() and needle not in iid.lower():
                continue
            value = f"{prefix}{iid}"
            if len(value) > 100:
                continue
            choices.append(app_commands.Choice(name=label[:100], value=value))
            if len(choices) >= 25:
                break
        return choices

    # ---- Shared reply path for command + buttons ----
    async def respond_and_reply(self, interaction: discord.Interaction, trade_id: str, accept: bool) -> Optional[Trade]:
        try:
            t = await run_blocking(self.engine.respond, interaction.user.id, trade_id, accept)
        except TradeError as e:
            await interaction.response.send_message(_error_text(e), ephemeral=True)
            return None
        except asyncio.TimeoutError:
            await interaction.response.send_message(
                "⏳ Still processing. Check `/trade_show` in a moment.", ephemeral=True)
            return None
        except Exception:
            logger.exception("Unexpected error responding to trade %s", trade_id)
            await interaction.response.send_message("❌ Something went wrong.", ephemeral=True)
            return None

        if accept:
            await interaction.response.send_message("✅ Trade executed.", ephemeral=True)
            if interaction.channel is not None:
                await interaction.channel.send(
                    f"🤝 Trade `{t.id[:8]}` completed: <@{t.initiator_id}> ⇄ <@{t.receiver_id}>"
                )
        else:
            await interaction.response.send_message("🛑 Trade rejected.", ephemeral=True)
        return t

    # ---------- Commands ----------

    @app_commands.command(
        name="trade_propose",
        description="Propose a trade: your cards for some of another player's cards"
    )
    @app_commands.guilds(GUILD)
    @app_commands.describe(
        to_user="User you want to trade with (bots not allowed)",
        my_cards=f"Card IDs you offer, comma separated (max {TRADE_MAX_ITEMS_PER_SIDE})",
        their_cards=f"Card IDs you want from them, comma separated (max {TRADE_MAX_ITEMS_PER_SIDE})",
    )
    @app_commands.autocomplete(my_cards=ac_card_owned, their_cards=ac_card_target)
    async def trade_propose(
        self,
        interaction: discord.Interaction,
        to_user: discord.User,
        my_cards: str,
        their_cards: str,
    ):
        if to_user.bot:
            await interaction.response.send_message("❌ You cannot trade with bots.", ephemeral=True); return

        try:
            t = await run_blocking(
                self.engine.propose, interaction.user.id, to_user.id,
                split_id_list(my_cards), split_id_list(their_cards),
            )
        except TradeError as e:
            await interaction.response.send_message(_error_text(e), ephemeral=True); return
        except asyncio.TimeoutError:
            await interaction.response.send_message(
                "⏳ Still processing. Check `/trades_pending` in a moment.", ephemeral=True); return

        view = TradeResponseView(self, t.id, t.receiver_id)
        await interaction.response.send_message(
            content=(f"{to_user.mention} a trade has been proposed to you by {interaction.user.mention}. "
                     f"Use the buttons or `/trade_respond trade_id:{t.id}`."),
            embed=_trade_embed(self.state, t),
            view=view,
        )
        try:
            view.message = await interaction.original_response()
        except discord.HTTPException:
            view.message = None

    @app_commands.command(name="trade_respond", description="Accept or reject a trade offered to you")
    @app_commands.guilds(GUILD)
    @app_commands.describe(trade_id="Pending trade ID", accept="True to accept, False to reject")
    async def trade_respond(self, interaction: discord.Interaction, trade_id: str, accept: bool):
        await self.respond_and_reply(interaction, trade_id, accept)

    @app_commands.command(name="trade_cancel", description="Cancel a pending trade you proposed")
    @app_commands.guilds(GUILD)
    @app_commands.describe(trade_id="Trade ID (optional). If omitted, cancels your latest pending proposal.")
    async def trade_cancel_cmd(self, interaction: discord.Interaction, trade_id: Optional[str] = None):
        if not trade_id:
            pending = await run_blocking(self.engine.list_pending, interaction.user.id)
            mine = [t for t in pending if t.initiator_id == str(interaction.user.id)]
            if not mine:
                await interaction.response.send_message("No pending trade found.", ephemeral=True); return
            trade_id = mine[0].id

        try:
            t = await run_blocking(self.engine.cancel, interaction.user.id, trade_id)
        except TradeError as e:
            await interaction.response.send_message(_error_text(e), ephemeral=True); return
        except asyncio.TimeoutError:
            await interaction.response.send_message(
                "⏳ Still processing. Check `/trade_show` in a moment.", ephemeral=True); return

        await interaction.response.send_message("🛑 Trade cancelled.", ephemeral=True)
        if interaction.channel is not None:
            await interaction.channel.send(
                f"🛑 trade `{t.id[:8]}` between <@{t.initiator_id}> and <@{t.receiver_id}> was cancelled"
            )

    @app_commands.command(name="trade_show", description="Show one trade")
    @app_commands.guilds(GUILD)
    @app_commands.describe(trade_id="Trade ID")
    async def trade_show(self, interaction: discord.Interaction, trade_id: str):
        try:
            t = await run_blocking(self.engine.get, trade_id)
        except TradeError as e:
            await interaction.response.send_message(_error_text(e), ephemeral=True); return
        if not t.involves(interaction.user.id):
            await interaction.response.send_message("Only trade participants can view this trade.", ephemeral=True); return
        await interaction.response.send_message(embed=_trade_embed(self.state, t), ephemeral=True)

    @app_commands.command(name="trades", description="List your trades, newest first")
    @app_commands.guilds(GUILD)
    async def trades(self, interaction: discord.Interaction):
        rows = await run_blocking(self.engine.list_for_party, interaction.user.id, limit=25)
        await self._send_list(interaction, "Your trades", rows)

    @app_commands.command(name="trades_pending", description="List your pending trades, newest first")
    @app_commands.guilds(GUILD)
    async def trades_pending(self, interaction: discord.Interaction):
        rows = await run_blocking(self.engine.list_pending, interaction.user.id, limit=25)
        await self._send_list(interaction, "Your pending trades", rows)

    async def _send_list(self, interaction: discord.Interaction, title: str, rows: List[Trade]):
        if not rows:
            await interaction.response.send_message(f"{title}: none.", ephemeral=True); return
        lines = [_trade_summary_line(t, interaction.user.id) for t in rows]
        emb = discord.Embed(title=title, description="\n".join(lines)[:4000], color=0x2b6cb0)
        await interaction.response.send_message(embed=emb, ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(Trades(bot))
