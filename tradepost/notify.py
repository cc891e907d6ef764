import asyncio
import logging
from typing import Any, Dict, Optional

import discord

from tradepost.constants import TRADE_NOTIFY_DM
from tradepost.db import db_notification_create

logger = logging.getLogger(__name__)


class TradeNotifier:
    """Store a notification for the recipient and DM it when a Discord client is attached.

    Best-effort: notify() never raises. Trade transitions call it after commit,
    so a failure here cannot undo or block a trade.
    """

    def __init__(self, state, client: Optional[discord.Client] = None, *,
                 loop: Optional[asyncio.AbstractEventLoop] = None, dm_enabled: bool = TRADE_NOTIFY_DM):
        self.state = state
        self.client = client
        self.loop = loop
        self.dm_enabled = dm_enabled

    def attach(self, client: discord.Client, loop: asyncio.AbstractEventLoop) -> None:
        self.client = client
        self.loop = loop

    def notify(self, recipient_id, kind: str, title: str, message: str, *,
               metadata: Optional[Dict[str, Any]] = None) -> bool:
        try:
            db_notification_create(self.state, recipient_id, kind, title, message, metadata)
        except Exception:
            logger.warning("Failed to store %s notification for user_id=%s", kind, recipient_id, exc_info=True)
            return False
        self._schedule_dm(recipient_id, title, message)
        return True

    def _schedule_dm(self, recipient_id, title: str, message: str) -> None:
        if not (self.dm_enabled and self.client is not None and self.loop is not None):
            return
        if self.loop.is_closed():
            return
        try:
            user_id = int(recipient_id)
        except (TypeError, ValueError):
            return
        try:
            fut = asyncio.run_coroutine_threadsafe(self._send_dm(user_id, title, message), self.loop)
        except Exception:
            logger.warning("Could not schedule DM to user_id=%s", user_id, exc_info=True)
            return
        fut.add_done_callback(self._log_dm_failure)

    @staticmethod
    def _log_dm_failure(fut) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("DM task failed", exc_info=exc)

    async def _send_dm(self, user_id: int, title: str, message: str) -> bool:
        user = await self._resolve_user(user_id)
        if user is None:
            return False
        try:
            dm = await user.create_dm()
            await dm.send(embed=discord.Embed(title=title, description=message, color=0x2b6cb0))
            return True
        except Exception:
            logger.warning("Failed to DM notification to user_id=%s", user_id, exc_info=True)
            return False

    async def _resolve_user(self, user_id: int) -> Optional[discord.User | discord.Member]:
        user = self.client.get_user(user_id)
        if user:
            return user
        try:
            return await self.client.fetch_user(user_id)
        except Exception:
            return None
