"""
ChronoHeal - Detection Service Tests
====================================

Scheduler lifecycle, single-flight, cooldown and concurrency limits.
"""

import asyncio
import pytest

from shared.schemas.incidents import IncidentRun, OODAPhase, RunResult

from src.core.detection_service import DetectionService
from src.core.errors import RunInProgressError, SchedulerStateError
from src.core.evidence_buffer import EvidenceBufferRegistry

from conftest import make_settings, make_unit


class GatedController:
    """Controller stand-in whose runs block until released."""

    def __init__(self):
        self.started: list[str] = []
        self.gate = asyncio.Event()

    async def run(self, subject: str) -> IncidentRun:
        self.started.append(subject)
        await self.gate.wait()
        return IncidentRun(subject=subject, phase=OODAPhase.DONE, result=RunResult.HEALTHY)


def make_service(**overrides) -> tuple[DetectionService, GatedController]:
    controller = GatedController()
    settings = make_settings(**overrides)
    service = DetectionService(controller, EvidenceBufferRegistry(4), settings)
    return service, controller


class TestSchedulerLifecycle:

    @pytest.mark.asyncio
    async def test_start_stop(self):
        service, _ = make_service()

        service.start()
        assert service.is_running()
        assert service.get_status().running

        service.stop()
        assert not service.is_running()

    @pytest.mark.asyncio
    async def test_double_start_raises_without_state_change(self):
        service, _ = make_service()
        service.start()

        with pytest.raises(SchedulerStateError):
            service.start()
        assert service.is_running()

        service.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_raises(self):
        service, _ = make_service()

        with pytest.raises(SchedulerStateError):
            service.stop()
        assert not service.is_running()

    @pytest.mark.asyncio
    async def test_restart_from_stopped_and_running(self):
        service, _ = make_service()

        service.restart()
        assert service.is_running()
        service.restart()
        assert service.is_running()

        service.stop()

    @pytest.mark.asyncio
    async def test_scheduler_ticks_monitored_subjects(self):
        service, controller = make_service(monitored_subjects=["checkout"], detection_interval_seconds=0.01)

        service.start()
        await asyncio.sleep(0.05)
        service.stop()

        assert controller.started == ["checkout"]
        controller.gate.set()
        await service.wait_idle(timeout=1)

    @pytest.mark.asyncio
    async def test_stop_does_not_cancel_in_flight_runs(self):
        service, controller = make_service(monitored_subjects=["checkout"], detection_interval_seconds=0.01)
        service.start()
        await asyncio.sleep(0.03)

        service.stop()
        assert service.in_progress() == ["checkout"]

        controller.gate.set()
        await service.wait_idle(timeout=1)
        assert service.in_progress() == []
        assert service.get_status().last_outcomes["checkout"].result == RunResult.HEALTHY


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_tick_skips_subject_with_run_in_flight(self):
        service, controller = make_service(monitored_subjects=["checkout", "payments"])

        assert await service.tick() == ["checkout", "payments"]
        await asyncio.sleep(0)
        assert await service.tick() == []
        assert sorted(controller.started) == ["checkout", "payments"]

        controller.gate.set()
        await service.wait_idle(timeout=1)
        assert await service.tick() == ["checkout", "payments"]

        await service.wait_idle(timeout=1)

    @pytest.mark.asyncio
    async def test_trigger_rejects_busy_subject(self):
        service, controller = make_service()

        task = service.trigger("checkout")
        with pytest.raises(RunInProgressError):
            service.trigger("checkout")

        controller.gate.set()
        run = await task
        assert run.subject == "checkout"

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        service, controller = make_service(monitored_subjects=["a", "b", "c"], max_concurrent_runs=2)

        assert await service.tick() == ["a", "b"]

        controller.gate.set()
        await service.wait_idle(timeout=1)

    @pytest.mark.asyncio
    async def test_cooldown_skips_recent_subject(self):
        service, controller = make_service(monitored_subjects=["checkout"], cooldown_seconds=60)
        controller.gate.set()

        assert await service.tick() == ["checkout"]
        await service.wait_idle(timeout=1)

        assert await service.tick() == []

    @pytest.mark.asyncio
    async def test_on_demand_run_ignores_cooldown(self):
        service, controller = make_service(cooldown_seconds=60)
        controller.gate.set()

        first = await service.run_now("checkout")
        second = await service.run_now("checkout")

        assert first.run_id != second.run_id


class TestSubjects:

    @pytest.mark.asyncio
    async def test_watch_and_unwatch(self):
        service, _ = make_service(monitored_subjects=["checkout"])
        service.buffers.push("payments", make_unit("payments"))

        assert service.watch("payments")
        assert not service.watch("payments")
        assert service.subjects() == ["checkout", "payments"]

        assert service.unwatch("payments")
        assert service.subjects() == ["checkout"]
        assert not service.buffers.has("payments")
