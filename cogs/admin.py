import discord, os, logging
from discord.ext import commands
from discord import app_commands
from typing import List

from tradepost.constants import NOTIFY_SYSTEM
from tradepost.db import db_card_grant, db_card_get, db_card_remove, db_cards_owned, SystemCapability
from tradepost.decks import db_card_reassign
from tradepost.errors import TradeError

# Set guild ID for development
GUILD_ID = int(os.getenv("GUILD_ID", "0") or 0)
GUILD = discord.Object(id=GUILD_ID) if GUILD_ID else None

logger = logging.getLogger(__name__)

ADMIN_CAPABILITY = SystemCapability("admin")
MAX_GRANT_COPIES = 50


class Admin(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.state = bot.state

    async def ac_user_card(self, interaction: discord.Interaction, current: str):
        """Cards owned by the `from_user` option."""
        target = getattr(interaction.namespace, "from_user", None)
        if target is None:
            return []
        cur = (current or "").lower()
        out: List[app_commands.Choice[str]] = []
        for row in db_cards_owned(self.state, target.id, limit=200):
            label = f"{row['card_name']} — set:{row.get('card_set') or '?'} [{row.get('card_rarity') or '?'}]"
            if cur and cur not in label.lower() and cur not in row["instance_id"].lower():
                continue
            out.append(app_commands.Choice(name=label[:100], value=row["instance_id"]))
            if len(out) >= 25:
                break
        return out

    @app_commands.command(name="admin_card_grant", description="(Admin) Mint card instances for a user")
    @app_commands.guilds(GUILD)
    @app_commands.default_permissions(administrator=True)
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.describe(user="Recipient", name="Card name", card_set="Set name", rarity="Rarity",
                           copies=f"How many instances to mint (1-{MAX_GRANT_COPIES})")
    async def admin_card_grant(
        self,
        interaction: discord.Interaction,
        user: discord.User,
        name: str,
        card_set: str = "",
        rarity: str = "",
        copies: app_commands.Range[int, 1, MAX_GRANT_COPIES] = 1,
    ):
        try:
            ids = [db_card_grant(self.state, user.id, card_name=name, card_set=card_set, card_rarity=rarity)
                   for _ in range(int(copies))]
        except TradeError as e:
            await interaction.response.send_message(f"❌ {e.message}", ephemeral=True); return
        logger.info("Admin %s granted %d x %s to %s", interaction.user.id, len(ids), name, user.id)
        self._notify_system(user.id, "Cards Received", f"An admin gave you **x{len(ids)}** {name}.")
        shown = "\n".join(f"• `{i}`" for i in ids[:20])
        more = f"\n…and {len(ids) - 20} more" if len(ids) > 20 else ""
        await interaction.response.send_message(
            f"✅ Granted **x{len(ids)}** {name} to {user.mention}.\n{shown}{more}", ephemeral=True
        )

    @app_commands.command(name="admin_card_move", description="(Admin) Move one card instance between users")
    @app_commands.guilds(GUILD)
    @app_commands.default_permissions(administrator=True)
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.describe(from_user="Current owner", card="Card instance", to_user="New owner")
    @app_commands.autocomplete(card=ac_user_card)
    async def admin_card_move(
        self,
        interaction: discord.Interaction,
        from_user: discord.User,
        card: str,
        to_user: discord.User,
    ):
        if from_user.id == to_user.id:
            await interaction.response.send_message("❌ Source and destination are the same.", ephemeral=True); return
        ok, reason, stripped = db_card_reassign(self.state, card, from_user.id, to_user.id, capability=ADMIN_CAPABILITY)
        if not ok:
            msg = "card not found" if reason == "not_found" else f"card is owned by <@{reason}>"
            await interaction.response.send_message(f"❌ Move failed: {msg}.", ephemeral=True); return

        row = db_card_get(self.state, card) or {"card_name": card}
        logger.info("Admin %s moved card %s from %s to %s (left %d deck(s))",
                    interaction.user.id, card, from_user.id, to_user.id, len(stripped))
        self._notify_system(from_user.id, "Card Moved", f"An admin moved your **{row['card_name']}** to <@{to_user.id}>.")
        self._notify_system(to_user.id, "Card Received", f"An admin gave you **{row['card_name']}**.")
        await interaction.response.send_message(
            f"✅ Moved **{row['card_name']}** (`{card}`) from {from_user.mention} to {to_user.mention}.",
            ephemeral=True,
        )

    @app_commands.command(name="admin_card_remove", description="(Admin) Delete one card instance")
    @app_commands.guilds(GUILD)
    @app_commands.default_permissions(administrator=True)
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.describe(from_user="Current owner", card="Card instance")
    @app_commands.autocomplete(card=ac_user_card)
    async def admin_card_remove(self, interaction: discord.Interaction, from_user: discord.User, card: str):
        try:
            row = db_card_remove(self.state, interaction.user.id, card, capability=ADMIN_CAPABILITY)
        except TradeError as e:
            await interaction.response.send_message(f"❌ {e.message}", ephemeral=True); return
        logger.info("Admin %s removed card %s owned by %s", interaction.user.id, card, row["owner_id"])
        self._notify_system(row["owner_id"], "Card Removed", f"An admin removed your **{row['card_name']}**.")
        await interaction.response.send_message(
            f"🗑️ Removed **{row['card_name']}** (`{card}`) from <@{row['owner_id']}>.", ephemeral=True
        )

    def _notify_system(self, user_id, title: str, message: str) -> None:
        notifier = getattr(self.bot, "notifier", None)
        if notifier is not None:
            notifier.notify(user_id, NOTIFY_SYSTEM, title, message)


async def setup(bot: commands.Bot):
    await bot.add_cog(Admin(bot))
