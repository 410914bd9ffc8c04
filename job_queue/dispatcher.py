"""
Automation Dispatcher - runs stage automations off the request path.

Topology:
  ┌────────────────────┐  submit  ┌──────────────┐       ┌──────────────┐
  │ StageChangeService │─────────▶│ asyncio.Queue │──────▶│  Worker(s)   │
  └────────────────────┘          └──────────────┘       └──────┬───────┘
                                                                │
                                                    AutomationEngine.run_stage_automations

Jobs live in process memory. A job lost to a restart is recovered by the
next stage change or by rerunning automations; message dedup keeps a rerun
from double-queuing.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from database.store_base import CRMStore
from models.schemas import Stage, StageLogEntry
from rules.engine import AutomationEngine

logger = structlog.get_logger()


@dataclass
class AutomationJob:
    opportunity_id: str
    stage: Stage
    booking_time: Optional[datetime] = None
    meet_link: Optional[str] = None
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AutomationDispatcher:
    """
    Usage:
        dispatcher = AutomationDispatcher(engine, workers=2)
        dispatcher.start()
        job_id = dispatcher.submit(AutomationJob(opp_id, Stage.QUALIFIED))
        await dispatcher.join()      # wait for the queue to drain
        await dispatcher.stop()
    """

    def __init__(self, engine: AutomationEngine, workers: int = 2):
        self.engine = engine
        self.workers = max(workers, 1)
        self._queue: asyncio.Queue[AutomationJob] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self.completed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self):
        if self._tasks:
            return
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(i), name=f"automation-worker-{i}"))
        logger.info("automation_dispatcher_started", workers=self.workers)

    def submit(self, job: AutomationJob) -> str:
        self._queue.put_nowait(job)
        logger.info("automation_job_submitted", job_id=job.job_id,
                    opportunity_id=job.opportunity_id, stage=job.stage.value,
                    pending=self._queue.qsize())
        return job.job_id

    async def join(self):
        await self._queue.join()

    async def stop(self, drain: bool = True):
        """Stop workers. With drain=True, queued jobs finish first."""
        if drain and self._tasks:
            await self._queue.join()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("automation_dispatcher_stopped",
                    completed=self.completed, failed=self.failed, pending=self._queue.qsize())

    async def _worker(self, index: int):
        while True:
            job = await self._queue.get()
            try:
                await self._handle(job)
            finally:
                self._queue.task_done()

    async def _handle(self, job: AutomationJob):
        logger.info("automation_job_started", job_id=job.job_id,
                    opportunity_id=job.opportunity_id, stage=job.stage.value)
        try:
            result = await self.engine.run_stage_automations(
                job.opportunity_id, job.stage,
                booking_time=job.booking_time, meet_link=job.meet_link,
            )
        except Exception as e:
            self.failed += 1
            logger.error("automation_job_failed", job_id=job.job_id,
                         opportunity_id=job.opportunity_id, error=str(e))
            return
        self.completed += 1
        logger.info("automation_job_complete", job_id=job.job_id,
                    queued=result.messages_queued, errors=len(result.errors))


class StageChangeService:
    """Writes a stage change and hands the automations to the dispatcher."""

    def __init__(self, store: CRMStore, dispatcher: AutomationDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def move_stage(
        self,
        opportunity_id: str,
        new_stage: Stage,
        changed_by: Optional[str] = None,
        booking_time: Optional[datetime] = None,
        meet_link: Optional[str] = None,
    ) -> Optional[str]:
        """Returns the automation job id, or None when the opportunity does not exist."""
        opportunity = await self.store.get_opportunity(opportunity_id)
        if opportunity is None:
            logger.info("stage_change_unknown_opportunity", opportunity_id=opportunity_id)
            return None

        previous = await self.store.set_opportunity_stage(opportunity_id, new_stage)
        await self.store.add_stage_log(StageLogEntry(
            opportunity_id=opportunity_id,
            from_stage=previous,
            to_stage=new_stage,
            changed_by=changed_by,
        ))
        logger.info("stage_changed", opportunity_id=opportunity_id,
                    from_stage=previous.value if previous else None,
                    to_stage=new_stage.value, changed_by=changed_by)

        return self.dispatcher.submit(AutomationJob(
            opportunity_id=opportunity_id,
            stage=new_stage,
            booking_time=booking_time,
            meet_link=meet_link,
        ))
