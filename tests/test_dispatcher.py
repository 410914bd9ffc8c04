"""Tests for the automation dispatcher, stage changes and the sweep poller."""
import asyncio

import pytest

from backend.poller import SweepPoller
from job_queue.dispatcher import AutomationDispatcher, AutomationJob, StageChangeService
from models.schemas import AutomationResult, Stage
from rules.engine import AutomationEngine


class FlakyEngine:
    """Engine double that records jobs and fails for one opportunity."""

    def __init__(self):
        self.calls = []

    async def run_stage_automations(self, opportunity_id, new_stage, booking_time=None, meet_link=None):
        self.calls.append((opportunity_id, new_stage))
        if opportunity_id == "boom":
            raise RuntimeError("engine failure")
        return AutomationResult(opportunity_id=opportunity_id, stage=new_stage)


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_jobs_run_and_failures_are_contained(self):
        engine = FlakyEngine()
        dispatcher = AutomationDispatcher(engine, workers=2)
        dispatcher.start()

        dispatcher.submit(AutomationJob("boom", Stage.QUALIFIED))
        job_id = dispatcher.submit(AutomationJob("opp-1", Stage.QUALIFIED))
        await dispatcher.join()

        assert job_id
        assert sorted(engine.calls) == [("boom", Stage.QUALIFIED), ("opp-1", Stage.QUALIFIED)]
        assert dispatcher.completed == 1
        assert dispatcher.failed == 1
        assert dispatcher.running is True
        await dispatcher.stop()
        assert dispatcher.running is False

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self):
        engine = FlakyEngine()
        dispatcher = AutomationDispatcher(engine, workers=1)
        dispatcher.start()
        for i in range(3):
            dispatcher.submit(AutomationJob(f"opp-{i}", Stage.LOST))
        await dispatcher.stop(drain=True)
        assert len(engine.calls) == 3
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        dispatcher = AutomationDispatcher(FlakyEngine(), workers=3)
        dispatcher.start()
        dispatcher.start()
        assert len(dispatcher._tasks) == 3
        await dispatcher.stop()


class TestStageChangeService:
    @pytest.mark.asyncio
    async def test_move_stage_logs_and_runs_automations(self, crm, templates, engine_config):
        dispatcher = AutomationDispatcher(AutomationEngine(crm.store, templates, engine_config))
        service = StageChangeService(crm.store, dispatcher)
        dispatcher.start()

        job_id = await service.move_stage("opp-1", Stage.QUALIFIED, changed_by="owner-1")
        await dispatcher.join()
        await dispatcher.stop()

        assert job_id is not None
        assert (await crm.store.get_opportunity("opp-1")).stage == Stage.QUALIFIED
        log = crm.store._stage_log
        assert len(log) == 1
        assert (log[0].from_stage, log[0].to_stage, log[0].changed_by) == (
            Stage.NEW_ENQUIRY, Stage.QUALIFIED, "owner-1",
        )
        assert [t.type for t in await crm.store.list_tasks("opp-1")] == ["schedule_call2"]
        assert len(await crm.store.list_messages("lead-1")) == 2

    @pytest.mark.asyncio
    async def test_unknown_opportunity(self, store):
        dispatcher = AutomationDispatcher(FlakyEngine())
        service = StageChangeService(store, dispatcher)
        assert await service.move_stage("missing", Stage.QUALIFIED) is None
        assert dispatcher.pending == 0


class TestSweepPoller:
    @pytest.mark.asyncio
    async def test_run_once_counts_success(self):
        poller = SweepPoller()

        async def sweep():
            return 3

        assert await poller.run_once("messages", sweep) == 3
        assert poller.runs["messages"] == 1

    @pytest.mark.asyncio
    async def test_run_once_contains_errors(self):
        poller = SweepPoller()

        async def sweep():
            raise RuntimeError("db down")

        assert await poller.run_once("messages", sweep) is None
        assert poller.runs.get("messages", 0) == 0

    @pytest.mark.asyncio
    async def test_loop_runs_until_stopped(self):
        poller = SweepPoller()
        ticks = []

        async def sweep():
            ticks.append(1)

        poller.add("meetings", sweep, 0.01)
        await poller.start()
        await asyncio.sleep(0.05)
        await poller.stop()

        assert poller.runs["meetings"] >= 1
        count = len(ticks)
        await asyncio.sleep(0.03)
        assert len(ticks) == count
