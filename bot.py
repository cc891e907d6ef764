# bot.py
import os, asyncio
import discord
from discord.ext import commands
from dotenv import load_dotenv
from pathlib import Path

from tradepost.state import AppState
from tradepost.db import db_init, db_init_trades, db_init_notifications
from tradepost.notify import TradeNotifier
from tradepost.trade_engine import TradeEngine

load_dotenv()
TOKEN    = os.getenv("DISCORD_TOKEN")
GUILD_ID = int(os.getenv("GUILD_ID", "0") or 0)
DEV_FORCE_CLEAN = os.getenv("DEV_FORCE_CLEAN", "0") == "1"

BASE_DIR = Path(__file__).resolve().parent
DB_PATH  = os.getenv("DB_PATH", "tradepost.sqlite3")

# make relative paths project-relative
if not os.path.isabs(DB_PATH):
    DB_PATH = str((BASE_DIR / DB_PATH).resolve())

intents = discord.Intents.default()
bot = commands.Bot(command_prefix="!", intents=intents)
tree = bot.tree

bot.state = AppState(db_path=DB_PATH)

# Engine and notifier exist before cogs load; DMs start once the loop is known.
bot.notifier = TradeNotifier(bot.state)
bot.trade_engine = TradeEngine(bot.state, bot.notifier)

COGS = ["cogs.collection", "cogs.decks", "cogs.trade", "cogs.admin"]

_started = False

@bot.event
async def on_ready():
    global _started
    if _started:
        # on_ready fires again after reconnects
        print(f"Reconnected as {bot.user} (ID: {bot.user.id})")
        return
    _started = True

    # 1) Schema
    await asyncio.to_thread(db_init, bot.state)
    await asyncio.to_thread(db_init_trades, bot.state)
    await asyncio.to_thread(db_init_notifications, bot.state)

    bot.notifier.attach(bot, asyncio.get_running_loop())

    # 2) Load cogs BEFORE syncing
    for ext in COGS:
        try:
            await bot.load_extension(ext)
            print(f"[cogs] loaded {ext}")
        except Exception as e:
            print(f"[cogs] FAILED {ext}: {e}")

    # 3) (Optional during dev) clear any stale commands, then guild-sync
    if DEV_FORCE_CLEAN and GUILD_ID:
        try:
            print(f"[sync] clearing GUILD {GUILD_ID} commands…")
            tree.clear_commands(guild=discord.Object(id=GUILD_ID))
            await tree.sync(guild=discord.Object(id=GUILD_ID))
            print("[sync] GUILD cleared")
        except Exception as e:
            print("[sync] guild clear failed:", e)

    # 4) Final sync to the dev guild for instant availability
    if GUILD_ID:
        await tree.sync(guild=discord.Object(id=GUILD_ID))
        cmds = await tree.fetch_commands(guild=discord.Object(id=GUILD_ID))
        print("[sync] guild commands:", [c.name for c in cmds], "count:", len(cmds))
    else:
        await tree.sync()
        print("Slash commands globally synced (may take a while)")

    print(f"Logged in as {bot.user} (ID: {bot.user.id})")

if __name__ == "__main__":
    if not TOKEN:
        raise SystemExit("DISCORD_TOKEN missing in .env")
    bot.run(TOKEN)
