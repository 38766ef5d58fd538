"""Expired-session cleanup background worker.

Deletes expired sessions once on start and then every interval (hourly by
default). Deletion is a single bulk statement, so overlapping passes from
several broker processes only race to delete the same rows.
"""

import asyncio
import contextlib
import logging
from datetime import UTC, datetime

from oauth_broker.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60 * 60

# How long stop() lets an in-progress pass finish before cancelling it
DEFAULT_STOP_TIMEOUT_SECONDS = 5.0


class SessionCleanupWorker:
    """Periodically deletes expired sessions in the background.

    stop() wakes the loop out of its sleep and lets a pass that is already
    running finish; the pass is cancelled only if it outlives stop_timeout.

    Args:
        sessions: Session manager that performs the deletion.
        interval_seconds: Seconds between cleanup passes.
        stop_timeout: Seconds stop() waits for an in-progress pass.
    """

    def __init__(
        self,
        sessions: SessionManager,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self._sessions = sessions
        self._interval_seconds = interval_seconds
        self._stop_timeout = stop_timeout
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._last_run_at: datetime | None = None
        self._total_removed = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_run_at(self) -> datetime | None:
        """Timestamp of the most recent completed pass."""
        return self._last_run_at

    @property
    def total_removed(self) -> int:
        """Sessions removed since the worker was created."""
        return self._total_removed

    def start(self) -> None:
        """Start the cleanup loop. No-op if it is already running.

        Must be called with a running event loop.
        """
        if self.is_running:
            logger.warning("Session cleanup worker already running")
            return

        self._stopping.clear()
        self._task = asyncio.create_task(self._run_loop(), name="session-cleanup")
        logger.info(
            "Session cleanup worker started (interval=%ss)", self._interval_seconds
        )

    async def stop(self) -> None:
        """Stop the loop, waiting up to stop_timeout for a running pass."""
        task, self._task = self._task, None
        if task is None or task.done():
            return

        self._stopping.set()
        try:
            await asyncio.wait_for(task, timeout=self._stop_timeout)
        except TimeoutError:
            logger.warning(
                "Session cleanup pass still running after %ss; cancelled",
                self._stop_timeout,
            )
        logger.info("Session cleanup worker stopped")

    async def run_once(self) -> int:
        """Execute a single cleanup pass.

        Returns:
            Number of sessions removed.
        """
        removed = await self._sessions.cleanup_expired_sessions()
        self._total_removed += removed
        self._last_run_at = datetime.now(UTC)
        return removed

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                removed = await self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Error in session cleanup pass")
            else:
                if removed:
                    logger.info("Removed %d expired sessions", removed)

            # Sleep until the next pass, or until stop() is called
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self._interval_seconds
                )
