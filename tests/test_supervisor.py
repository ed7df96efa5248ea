"""Tests for the service supervisor state machine."""

from __future__ import annotations

import asyncio
import itertools

import pytest

from relay_core.errors import Indeterminate, StartFailed, StopFailed
from relay_core.orchestration.supervisor import Outcome, ServiceSupervisor
from relay_core.orchestration.units import DAEMON, GATEWAY, WORKER, ManagedUnit, UnitState


class FakeUnit(ManagedUnit):
    """Unit whose state changes after launch/terminate as instructed."""

    def __init__(
        self,
        name,
        events,
        state=UnitState.STOPPED,
        after_launch=UnitState.RUNNING,
        after_terminate=UnitState.STOPPED,
        launch_error=None,
        delay=0.0,
        native_restart=False,
    ):
        super().__init__(name, detectors=[])
        self.events = events
        self.current = state
        self.after_launch = after_launch
        self.after_terminate = after_terminate
        self.launch_error = launch_error
        self.delay = delay
        self.native_restart = native_restart

    async def state(self):
        return self.current

    async def launch(self):
        self.events.append(("launch", self.name))
        await asyncio.sleep(self.delay)
        if self.launch_error is not None:
            raise self.launch_error
        self.current = self.after_launch

    async def terminate(self, force=False):
        self.events.append(("terminate-force" if force else "terminate", self.name))
        await asyncio.sleep(self.delay)
        self.current = self.after_terminate

    async def restart_in_place(self):
        if not self.native_restart:
            return False
        self.events.append(("native-restart", self.name))
        self.current = self.after_launch
        return True


def supervisor_for(*units, **kwargs):
    kwargs.setdefault("settle_seconds", 0)
    kwargs.setdefault("restart_delay", 0)
    kwargs.setdefault("stop_grace", 0.05)
    kwargs.setdefault("poll_interval", 0.01)
    return ServiceSupervisor({u.name: u for u in units}, **kwargs)


class TestStart:

    @pytest.mark.asyncio
    async def test_start_stopped_unit(self):
        events = []
        supervisor = supervisor_for(FakeUnit(GATEWAY, events))

        result = await supervisor.start(GATEWAY)

        assert result.outcome == Outcome.STARTED
        assert events == [("launch", GATEWAY)]

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        events = []
        supervisor = supervisor_for(FakeUnit(GATEWAY, events, state=UnitState.RUNNING))

        first = await supervisor.start(GATEWAY)
        second = await supervisor.start(GATEWAY)

        assert first.outcome == second.outcome == Outcome.ALREADY_RUNNING
        assert events == []

    @pytest.mark.asyncio
    async def test_launch_error_raises_start_failed(self):
        unit = FakeUnit(DAEMON, [], launch_error=FileNotFoundError("ollama"))
        unit.log_path = "/tmp/ollama.log"
        supervisor = supervisor_for(unit)

        with pytest.raises(StartFailed) as exc_info:
            await supervisor.start(DAEMON)

        assert exc_info.value.unit == DAEMON
        assert "/tmp/ollama.log" in exc_info.value.hint

    @pytest.mark.asyncio
    async def test_not_running_after_settle_raises_start_failed(self):
        supervisor = supervisor_for(FakeUnit(GATEWAY, [], after_launch=UnitState.STOPPED))
        with pytest.raises(StartFailed):
            await supervisor.start(GATEWAY)

    @pytest.mark.asyncio
    async def test_partial_start_is_indeterminate(self):
        supervisor = supervisor_for(FakeUnit(WORKER, [], after_launch=UnitState.INDETERMINATE))
        with pytest.raises(Indeterminate) as exc_info:
            await supervisor.start(WORKER)
        assert exc_info.value.hint == f"Run 'relayctl restart {WORKER}'"

    @pytest.mark.asyncio
    async def test_unknown_unit(self):
        supervisor = supervisor_for(FakeUnit(GATEWAY, []))
        with pytest.raises(KeyError):
            await supervisor.start("nope")


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_running_unit(self):
        events = []
        supervisor = supervisor_for(FakeUnit(GATEWAY, events, state=UnitState.RUNNING))

        result = await supervisor.stop(GATEWAY)

        assert result.outcome == Outcome.STOPPED
        assert events == [("terminate", GATEWAY)]

    @pytest.mark.asyncio
    async def test_stop_already_stopped(self):
        events = []
        supervisor = supervisor_for(FakeUnit(GATEWAY, events))
        result = await supervisor.stop(GATEWAY)
        assert result.outcome == Outcome.NOT_RUNNING
        assert events == []

    @pytest.mark.asyncio
    async def test_force_is_passed_through(self):
        events = []
        supervisor = supervisor_for(FakeUnit(DAEMON, events, state=UnitState.RUNNING))
        await supervisor.stop(DAEMON, force=True)
        assert events == [("terminate-force", DAEMON)]

    @pytest.mark.asyncio
    async def test_still_running_after_grace_raises(self):
        unit = FakeUnit(DAEMON, [], state=UnitState.RUNNING, after_terminate=UnitState.RUNNING)
        supervisor = supervisor_for(unit, stop_grace=0.05)

        with pytest.raises(StopFailed) as exc_info:
            await supervisor.stop(DAEMON)
        assert "--force" in exc_info.value.hint

    @pytest.mark.asyncio
    async def test_slow_stop_within_grace(self):
        unit = FakeUnit(DAEMON, [], state=UnitState.RUNNING, after_terminate=UnitState.RUNNING)
        supervisor = supervisor_for(unit, stop_grace=1.0)

        async def exit_later():
            await asyncio.sleep(0.05)
            unit.current = UnitState.STOPPED

        task = asyncio.ensure_future(exit_later())
        result = await supervisor.stop(DAEMON)
        await task
        assert result.outcome == Outcome.STOPPED


class TestRestart:

    @pytest.mark.asyncio
    async def test_restart_stops_then_starts(self):
        events = []
        supervisor = supervisor_for(FakeUnit(GATEWAY, events, state=UnitState.RUNNING))

        result = await supervisor.restart(GATEWAY)

        assert result.outcome == Outcome.RESTARTED
        assert events == [("terminate", GATEWAY), ("launch", GATEWAY)]

    @pytest.mark.asyncio
    async def test_restart_of_stopped_unit_starts_it(self):
        events = []
        supervisor = supervisor_for(FakeUnit(GATEWAY, events))
        await supervisor.restart(GATEWAY)
        assert events == [("launch", GATEWAY)]

    @pytest.mark.asyncio
    async def test_worker_uses_native_restart(self):
        events = []
        worker = FakeUnit(WORKER, events, state=UnitState.RUNNING, native_restart=True)
        supervisor = supervisor_for(worker)

        result = await supervisor.restart(WORKER)

        assert result.outcome == Outcome.RESTARTED
        assert events == [("native-restart", WORKER)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("delays", list(itertools.permutations([0.0, 0.01, 0.03])))
    async def test_restart_all_is_sequential_in_dependency_order(self, delays):
        events = []
        daemon_delay, gateway_delay, worker_delay = delays
        supervisor = supervisor_for(
            FakeUnit(WORKER, events, state=UnitState.RUNNING, delay=worker_delay),
            FakeUnit(GATEWAY, events, state=UnitState.RUNNING, delay=gateway_delay),
            FakeUnit(DAEMON, events, state=UnitState.RUNNING, delay=daemon_delay),
        )

        results = await supervisor.restart_all()

        assert [r.unit for r in results] == [DAEMON, GATEWAY, WORKER]
        assert events == [
            ("terminate", DAEMON), ("launch", DAEMON),
            ("terminate", GATEWAY), ("launch", GATEWAY),
            ("terminate", WORKER), ("launch", WORKER),
        ]

    @pytest.mark.asyncio
    async def test_restart_all_stops_at_first_failure(self):
        events = []
        supervisor = supervisor_for(
            FakeUnit(DAEMON, events, launch_error=RuntimeError("boom")),
            FakeUnit(GATEWAY, events),
        )
        with pytest.raises(StartFailed):
            await supervisor.restart_all()
        assert ("launch", GATEWAY) not in events


class TestStatus:

    @pytest.mark.asyncio
    async def test_status_all_in_order(self):
        supervisor = supervisor_for(
            FakeUnit(WORKER, []),
            FakeUnit(DAEMON, [], state=UnitState.RUNNING),
            FakeUnit(GATEWAY, [], state=UnitState.INDETERMINATE),
        )

        statuses = await supervisor.status_all()

        assert [s.unit for s in statuses] == [DAEMON, GATEWAY, WORKER]
        assert [s.state for s in statuses] == [
            UnitState.RUNNING, UnitState.INDETERMINATE, UnitState.STOPPED,
        ]
        assert statuses[0].to_dict()["running"] is True

    @pytest.mark.asyncio
    async def test_status_does_not_act(self):
        events = []
        supervisor = supervisor_for(FakeUnit(GATEWAY, events))
        await supervisor.status(GATEWAY)
        assert events == []

    @pytest.mark.asyncio
    async def test_stop_all_reverse_order(self):
        events = []
        supervisor = supervisor_for(
            FakeUnit(DAEMON, events, state=UnitState.RUNNING),
            FakeUnit(GATEWAY, events, state=UnitState.RUNNING),
            FakeUnit(WORKER, events, state=UnitState.RUNNING),
        )
        await supervisor.stop_all()
        assert [name for _, name in events] == [WORKER, GATEWAY, DAEMON]
