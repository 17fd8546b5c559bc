"""Periodic clearing of message history in a fixed list of groups."""

import asyncio

from loguru import logger

from wagate.config import Config
from wagate.cron.periodic import PeriodicTask
from wagate.errors import GatewayError
from wagate.relay.events import is_group_id
from wagate.session.registry import SessionRegistry


class GroupJanitor:
    """Clears the configured groups on the default session every N minutes."""

    def __init__(self, config: Config, registry: SessionRegistry):
        self.config = config
        self.registry = registry
        self._task: PeriodicTask | None = None

    @property
    def enabled(self) -> bool:
        m = self.config.maintenance
        return m.clear_groups_interval_minutes > 0 and bool(m.clear_groups)

    async def run_once(self) -> tuple[int, int]:
        """Clear every configured group once. Returns (succeeded, failed)."""
        groups = list(self.config.maintenance.clear_groups)
        pause = self.config.maintenance.clear_groups_pause_seconds
        session_id = self.config.sessions.default_session
        logger.info(f"Janitor: clearing {len(groups)} groups on session {session_id}")

        succeeded = failed = 0
        for i, chat_id in enumerate(groups):
            if not is_group_id(chat_id):
                logger.warning(f"Janitor: skipping {chat_id}, not a group id")
                failed += 1
                continue
            try:
                await self.registry.supervisor(session_id).clear_chat(chat_id)
                succeeded += 1
                logger.info(f"Janitor: cleared {chat_id}")
            except GatewayError as e:
                failed += 1
                logger.error(f"Janitor: failed to clear {chat_id}: {e.message}")
            if pause and i < len(groups) - 1:
                await asyncio.sleep(pause)

        logger.info(f"Janitor: done. Success: {succeeded}, Failed: {failed}")
        return succeeded, failed

    def start(self) -> None:
        if not self.enabled:
            logger.info("Janitor: group clearing disabled")
            return
        interval = self.config.maintenance.clear_groups_interval_minutes * 60
        self._task = PeriodicTask("group-janitor", interval, self.run_once)
        self._task.start()

    def stop(self) -> None:
        if self._task is not None:
            self._task.stop()
            self._task = None
