# cogs/decks.py
import os
import discord
from typing import List
from discord.ext import commands
from discord import app_commands

from tradepost.state import AppState
from tradepost.db import db_cards_owned, db_card_get
from tradepost.decks import (
    db_deck_create, db_deck_list, db_deck_get, db_deck_cards,
    db_deck_add_card, db_deck_remove_card,
)
from tradepost.errors import TradeError

GUILD_ID = int(os.getenv("GUILD_ID", "0") or 0)
GUILD = discord.Object(id=GUILD_ID) if GUILD_ID else None


class Decks(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.state: AppState = self.bot.state

    async def ac_my_deck(self, interaction: discord.Interaction, current: str):
        cur = (current or "").lower()
        out: List[app_commands.Choice[str]] = []
        for d in db_deck_list(self.state, interaction.user.id):
            if cur and cur not in d["name"].lower():
                continue
            out.append(app_commands.Choice(name=f"{d['name']} ({d['card_count']} cards)"[:100], value=d["deck_id"]))
            if len(out) >= 25:
                break
        return out

    async def ac_my_card(self, interaction: discord.Interaction, current: str):
        cur = (current or "").lower()
        out: List[app_commands.Choice[str]] = []
        for row in db_cards_owned(self.state, interaction.user.id, limit=200):
            label = f"{row['card_name']} — set:{row.get('card_set') or '?'} [{row.get('card_rarity') or '?'}]"
            if cur and cur not in label.lower() and cur not in row["instance_id"].lower():
                continue
            out.append(app_commands.Choice(name=label[:100], value=row["instance_id"]))
            if len(out) >= 25:
                break
        return out

    async def ac_deck_card(self, interaction: discord.Interaction, current: str):
        deck_id = getattr(interaction.namespace, "deck", None)
        if not deck_id:
            return []
        cur = (current or "").lower()
        out: List[app_commands.Choice[str]] = []
        for iid in db_deck_cards(self.state, deck_id):
            card = db_card_get(self.state, iid) or {}
            label = f"{card.get('card_name') or '?'} ({iid})"
            if cur and cur not in label.lower():
                continue
            out.append(app_commands.Choice(name=label[:100], value=iid))
            if len(out) >= 25:
                break
        return out

    @app_commands.command(name="deck_create", description="Create an empty deck")
    @app_commands.guilds(GUILD)
    @app_commands.describe(name="Deck name")
    async def deck_create(self, interaction: discord.Interaction, name: str):
        try:
            deck = db_deck_create(self.state, interaction.user.id, name)
        except TradeError as e:
            await interaction.response.send_message(f"❌ {e.message}", ephemeral=True); return
        await interaction.response.send_message(f"✅ Created deck **{deck['name']}**.", ephemeral=True)

    @app_commands.command(name="deck_add", description="Put one of your cards into a deck")
    @app_commands.guilds(GUILD)
    @app_commands.describe(deck="Your deck", card="Card to add")
    @app_commands.autocomplete(deck=ac_my_deck, card=ac_my_card)
    async def deck_add(self, interaction: discord.Interaction, deck: str, card: str):
        try:
            added = db_deck_add_card(self.state, interaction.user.id, deck, card)
        except TradeError as e:
            await interaction.response.send_message(f"❌ {e.message}", ephemeral=True); return
        if not added:
            await interaction.response.send_message("ℹ️ That card is already in the deck.", ephemeral=True); return
        await interaction.response.send_message("✅ Card added to deck.", ephemeral=True)

    @app_commands.command(name="deck_remove", description="Take a card out of one of your decks")
    @app_commands.guilds(GUILD)
    @app_commands.describe(deck="Your deck", card="Card to remove")
    @app_commands.autocomplete(deck=ac_my_deck, card=ac_deck_card)
    async def deck_remove(self, interaction: discord.Interaction, deck: str, card: str):
        try:
            removed = db_deck_remove_card(self.state, deck, card, actor_id=interaction.user.id)
        except TradeError as e:
            await interaction.response.send_message(f"❌ {e.message}", ephemeral=True); return
        if not removed:
            await interaction.response.send_message("ℹ️ That card is not in the deck.", ephemeral=True); return
        await interaction.response.send_message("✅ Card removed from deck.", ephemeral=True)

    @app_commands.command(name="deck_show", description="Show the cards in one of your decks")
    @app_commands.guilds(GUILD)
    @app_commands.describe(deck="Your deck")
    @app_commands.autocomplete(deck=ac_my_deck)
    async def deck_show(self, interaction: discord.Interaction, deck: str):
        d = db_deck_get(self.state, deck)
        if not d or d["owner_id"] != str(interaction.user.id):
            await interaction.response.send_message("❌ Deck not found.", ephemeral=True); return
        lines = []
        for iid in db_deck_cards(self.state, deck):
            card = db_card_get(self.state, iid) or {}
            lines.append(f"• {card.get('card_name') or '?'} `{iid}`")
        emb = discord.Embed(title=d["name"], description="\n".join(lines)[:4000] or "(empty)", color=0x2b6cb0)
        await interaction.response.send_message(embed=emb, ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(Decks(bot))
