"""
Connectivity monitor.

Polls the CRM API and replays the pending-operation queue whenever the API
becomes reachable again after being offline.
"""
import asyncio
import logging
from typing import Optional

from config.settings import settings
from crmsync.services.gateway import RemoteGateway
from crmsync.services.sync_coordinator import ReplayReport, SyncCoordinator

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Background asyncio task probing the API every poll interval."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        gateway: RemoteGateway,
        poll_seconds: Optional[float] = None,
    ):
        self.coordinator = coordinator
        self.gateway = gateway
        self.poll_seconds = poll_seconds if poll_seconds is not None else settings.connectivity_poll_seconds
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._was_online: Optional[bool] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_once(self) -> Optional[ReplayReport]:
        """
        Probe the API once.

        Returns:
            The replay report if this probe saw the API come back online
            (or found it online at startup with work queued), else None
        """
        online = await self.gateway.ping()
        previous = self._was_online
        self._was_online = online

        if not online:
            if previous is not False:
                logger.warning("Connectivity check: CRM API unreachable")
            self.coordinator.online = False
            return None

        came_back = previous is False or self.coordinator.online is False
        first_check = previous is None
        self.coordinator.online = True

        if came_back or (first_check and self.coordinator.status()["pending_count"]):
            logger.info("Connectivity check: CRM API reachable, replaying pending operations")
            return await self.coordinator.replay_pending()
        return None

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.check_once()
            except Exception as e:
                # Keep polling; the next transition retries the replay
                logger.error(f"Connectivity check failed: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        """Start polling on the running event loop."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="ConnectivityMonitor")
        logger.info(f"Connectivity monitor started (every {self.poll_seconds:g}s)")

    async def stop(self) -> None:
        """Stop polling and wait for the loop to exit."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        logger.info("Connectivity monitor stopped")
