import logging
import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.clock import utcnow
from core.exceptions import ConfigurationError, StateStoreError
from ingestion.orchestrator import RefreshOrchestrator
from models.base import TriggerSource
from schemas.partition import RunRecord

logger = logging.getLogger(__name__)


@dataclass
class RunRequest:
    """A pending trigger; concurrent triggers merge into one"""
    trigger: TriggerSource
    force: bool = False
    requested_at: datetime = field(default_factory=utcnow)
    coalesced: int = 0


class RefreshScheduler:
    """
    Single trigger channel in front of the orchestrator.

    Cron ticks (APScheduler) and manual requests both go through
    request_run(). A worker task runs one cycle at a time; triggers that
    arrive while a cycle is running are merged into one follow-up request
    (force flags OR-ed, manual wins over cron).
    """

    def __init__(
        self,
        orchestrator: RefreshOrchestrator,
        cron: str = "0 * * * *",
        timezone: str = "UTC",
        shutdown_grace_seconds: float = 30.0
    ):
        try:
            self.trigger = CronTrigger.from_crontab(cron, timezone=timezone)
        except (ValueError, LookupError) as e:
            raise ConfigurationError(
                f"Invalid refresh schedule '{cron}' ({timezone})",
                context={"cron": cron, "timezone": timezone},
                original_exception=e
            )

        self.orchestrator = orchestrator
        self.cron = cron
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.scheduler = AsyncIOScheduler(timezone=timezone)
        self.job_id = f"refresh_{orchestrator.table_name}"

        self.last_run: Optional[RunRecord] = None
        self._pending: Optional[RunRequest] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def cycle_running(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def request_run(self, trigger: TriggerSource = TriggerSource.MANUAL, force: bool = False) -> RunRequest:
        """
        Queue a cycle. Returns the (possibly merged) pending request.
        """
        if self._pending is None:
            self._pending = RunRequest(trigger=trigger, force=force)
        else:
            self._pending.force = self._pending.force or force
            if trigger == TriggerSource.MANUAL:
                self._pending.trigger = TriggerSource.MANUAL
            self._pending.coalesced += 1
            logger.info(
                f"Trigger ({trigger.value}) coalesced into pending run "
                f"(trigger: {self._pending.trigger.value}, force: {self._pending.force})"
            )

        if self._wakeup is not None:
            self._wakeup.set()
        return self._pending

    async def _on_cron_tick(self):
        """Job to request a scheduled refresh"""
        logger.info("Scheduler: cron tick")
        self.request_run(TriggerSource.CRON)

    async def _run_loop(self):
        while not self._stopping:
            await self._wakeup.wait()
            self._wakeup.clear()

            request, self._pending = self._pending, None
            if request is None or self._stopping:
                continue

            self._current = asyncio.create_task(
                self.orchestrator.run_cycle(request.trigger, request.force),
                name=f"refresh-cycle-{self.orchestrator.table_name}"
            )
            try:
                self.last_run = await self._current
            except StateStoreError as e:
                logger.error(
                    f"Scheduler: refresh cycle aborted - {e.message}",
                    extra={"error_context": e.to_dict()}
                )
            except Exception:
                logger.exception("Scheduler: refresh cycle failed")
            finally:
                self._current = None

    async def run_once(self, force: bool = False) -> RunRecord:
        """Run one manual cycle directly, outside the trigger loop"""
        self.last_run = await self.orchestrator.run_cycle(TriggerSource.MANUAL, force)
        return self.last_run

    def start(self, install_signal_handlers: bool = False):
        """Start the cron schedule and the trigger worker"""
        self._stopping = False
        self._wakeup = asyncio.Event()
        if self._pending is not None:
            self._wakeup.set()

        self.scheduler.add_job(
            self._on_cron_tick,
            trigger=self.trigger,
            id=self.job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        self._worker = asyncio.create_task(self._run_loop(), name="refresh-scheduler")

        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self._on_signal(s)))

        logger.info(f"Refresh scheduler started for {self.orchestrator.table_name} (cron: '{self.cron}')")

    async def _on_signal(self, sig: signal.Signals):
        logger.info(f"Received {sig.name}, shutting down refresh scheduler")
        await self.stop()

    async def stop(self, grace_seconds: Optional[float] = None):
        """
        Stop triggering new cycles and give the running one grace_seconds
        to finish before cancelling it. Cancellation discards its staging.
        """
        grace = self.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stopping = True

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        current = self._current
        if current is not None and not current.done():
            logger.info(f"Waiting up to {grace}s for the running refresh cycle")
            done, _ = await asyncio.wait({current}, timeout=grace)
            if not done:
                logger.warning("Refresh cycle did not finish in time, cancelling it")
                current.cancel()
            await asyncio.gather(current, return_exceptions=True)

        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

        await self.orchestrator.replacer.drain()
        logger.info("Refresh scheduler stopped")

    def status(self) -> Dict[str, Any]:
        """Snapshot for the API"""
        job = self.scheduler.get_job(self.job_id) if self.scheduler.running else None
        return {
            "running": self.running,
            "cycle_running": self.cycle_running,
            "phase": self.orchestrator.phase.value,
            "pending_request": self.has_pending,
            "next_cron_run": job.next_run_time if job else None,
            "cron": self.cron,
        }
