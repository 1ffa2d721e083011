"""Process lifecycle: connect, verify, spawn workers, shut down cleanly.

Startup order (any failure raises ``StartupError`` and nothing is spawned):

1. Configure logging
2. Connect the database pool (the database must already exist)
3. Run Alembic migrations (when ``run_migrations`` is set)
4. Load the notification attachment, if configured
5. Verify the Discord bot token
6. Spawn one ``SeriesWorker`` task per series plus the ``ExpirySweeper``

Shutdown sets the stop event, gives workers ``shutdown_timeout_s`` to finish
their current iteration, cancels stragglers, then closes the channel client
and the pool.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from pitwall.channel import DiscordChannel
from pitwall.config import PitwallConfig
from pitwall.core.logging import configure_logging
from pitwall.core.metrics import ReconcilerMetrics
from pitwall.core.reconciler import MessageReconciler, SeriesTarget
from pitwall.core.worker import ExpirySweeper, SeriesWorker
from pitwall.db import Database
from pitwall.errors import PitwallError, StartupError
from pitwall.migrations import run_migrations
from pitwall.models import Attachment
from pitwall.repository import PostgresRepository

logger = logging.getLogger(__name__)


def load_attachment(path: Path | None) -> Attachment | None:
    """Read the configured notification attachment into memory."""
    if path is None:
        return None
    try:
        return Attachment(filename=path.name, data=path.read_bytes())
    except OSError as exc:
        raise StartupError(f"Cannot read attachment {path}: {exc}") from exc


class NotifierDaemon:
    """Owns the pool, the channel client and every worker task."""

    def __init__(
        self,
        config: PitwallConfig,
        *,
        db: Database | None = None,
        channel: DiscordChannel | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.channel = channel
        self.metrics = ReconcilerMetrics()
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    async def start(self) -> None:
        """Execute the full startup sequence.

        Raises:
            StartupError: If the database or Discord cannot be reached, or the
                attachment cannot be read.
        """
        config = self.config

        # 1. Logging
        log_root = Path(config.logging.log_root) if config.logging.log_root else None
        configure_logging(config.logging.level, config.logging.format, log_root)

        # 2. Database
        if self.db is None:
            self.db = Database.from_env(config.db_name)
        try:
            await self.db.connect()
        except Exception as exc:
            raise StartupError(f"Cannot connect to database {config.db_name!r}: {exc}") from exc

        # 3. Migrations
        if config.run_migrations:
            try:
                await run_migrations(self.db.url)
            except Exception as exc:
                await self.db.close()
                raise StartupError(f"Database migrations failed: {exc}") from exc

        try:
            # 4. Attachment
            attachment = load_attachment(config.attachment)

            # 5. Discord credentials
            if self.channel is None:
                self.channel = DiscordChannel(config.token, metrics=self.metrics)
            try:
                await self.channel.verify()
            except PitwallError as exc:
                raise StartupError(f"Discord credential check failed: {exc}") from exc
        except StartupError:
            await self._close_clients()
            raise

        # 6. Workers
        repository = PostgresRepository(self.db)
        reconciler = MessageReconciler(
            repository,
            self.channel,
            metrics=self.metrics,
            calendar_post_delay=config.calendar_post_delay_seconds,
            attachment=attachment,
        )
        for series_config in config.series:
            worker = SeriesWorker(
                SeriesTarget(
                    series=series_config.series,
                    channel_id=series_config.channel_id,
                    role_id=series_config.role_id,
                ),
                repository,
                reconciler,
                poll_interval=config.poll_interval_seconds,
                calendar_interval=config.calendar_interval_seconds,
                metrics=self.metrics,
            )
            self._tasks.append(
                asyncio.create_task(
                    worker.run(self._stop_event), name=f"pitwall-{series_config.series}"
                )
            )
        sweeper = ExpirySweeper(
            reconciler, interval=config.poll_interval_seconds, metrics=self.metrics
        )
        self._tasks.append(
            asyncio.create_task(sweeper.run(self._stop_event), name="pitwall-sweeper")
        )
        logger.info(
            "pitwall running for %s",
            ", ".join(s.series.value for s in config.series),
        )

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Signal workers to stop after their current iteration
        2. Wait up to ``shutdown_timeout_s``, then cancel stragglers
        3. Close the Discord client
        4. Close DB pool
        """
        logger.info("Shutting down pitwall")
        self._stop_event.set()

        if self._tasks:
            done, pending = await asyncio.wait(
                self._tasks, timeout=self.config.shutdown_timeout_s
            )
            for task in pending:
                logger.warning("Cancelling task %s after shutdown timeout", task.get_name())
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "Task %s exited with an error",
                        task.get_name(),
                        exc_info=task.exception(),
                    )
            self._tasks = []

        await self._close_clients()
        logger.info("pitwall shutdown complete")

    async def _close_clients(self) -> None:
        if self.channel is not None:
            await self.channel.aclose()
        if self.db is not None:
            await self.db.close()
