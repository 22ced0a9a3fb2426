#!/usr/bin/env python3
"""
test_task_queue.py - Approval queue and execution tests
"""

import pytest

import task_queue
from command_executor import CommandExecutor, Ok
from opportunity_detector import OptimizationOpportunity
from state_store import DaemonState, Plan, StateStore
from task_queue import TaskNotFoundError, TaskQueue

DISK = OptimizationOpportunity("disk", "high", "Disk usage at 95%", "Clean up")
DOCKER = OptimizationOpportunity("docker", "low", "Docker runtime is active", "Prune")


class RecordingExecutor(CommandExecutor):
    def __init__(self):
        super().__init__()
        self.commands = []

    def execute(self, command, timeout=None):
        self.commands.append(command)
        if command.startswith("sudo "):
            return Ok("")
        return super().execute(command, timeout=timeout)


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state.json")


@pytest.fixture
def queue(store):
    return TaskQueue(store, RecordingExecutor(), command_timeout=5)


def test_manual_mode_enqueues_and_persists(queue, store):
    state = DaemonState(auto_approve=False)
    result = queue.submit(state, DISK, Plan(command="echo clean", risk_level="low"))

    assert result is None
    assert [t.type for t in queue.pending(state)] == ["disk"]
    assert queue.executor.commands == []
    assert [t.type for t in store.load().optimizations] == ["disk"]


def test_auto_approve_runs_low_risk(queue, store):
    state = DaemonState(auto_approve=True)
    result = queue.submit(state, DOCKER, Plan(command="echo pruned", risk_level="low"))

    assert str(result) == "pruned"
    assert state.optimizations == []
    assert state.optimization_history[-1].type == "docker"
    assert state.optimization_history[-1].outcome.success
    assert store.load().optimization_history[-1].command == "echo pruned"


@pytest.mark.parametrize("risk", ["medium", "high", "unknown"])
def test_auto_approve_never_runs_risky_plans(queue, risk):
    state = DaemonState(auto_approve=True)
    assert queue.submit(state, DISK, Plan(command="echo risky", risk_level=risk)) is None
    assert len(queue.pending(state)) == 1
    assert queue.executor.commands == []


@pytest.mark.parametrize("command,success", [("echo ok", True), ("exit 1", False)])
def test_execute_pending_consumes_task_regardless_of_outcome(queue, store, command, success):
    state = DaemonState()
    queue.submit(state, DISK, Plan(command=command, risk_level="high"))

    result = queue.execute_pending(state, 1)

    assert result.success is success
    assert state.optimizations == []
    assert store.load().optimizations == []
    assert state.optimization_history[-1].outcome.success is success


def test_execute_pending_resolves_against_current_list(queue):
    state = DaemonState()
    queue.submit(state, DISK, Plan(command="echo first", risk_level="high"))
    queue.submit(state, DOCKER, Plan(command="echo second", risk_level="high"))

    queue.execute_pending(state, 2)
    assert [t.type for t in queue.pending(state)] == ["disk"]

    queue.execute_pending(state, 1)
    assert queue.pending(state) == []
    assert queue.executor.commands == ["echo second", "echo first"]


@pytest.mark.parametrize("index", [0, 2, -1])
def test_execute_pending_bad_index(queue, index):
    state = DaemonState()
    queue.submit(state, DISK, Plan(command="echo x", risk_level="high"))
    with pytest.raises(TaskNotFoundError):
        queue.execute_pending(state, index)
    assert len(queue.pending(state)) == 1


def test_failed_outcome_records_error(queue):
    state = DaemonState()
    queue.submit(state, DISK, Plan(command="echo nope >&2; exit 7", risk_level="high"))
    queue.execute_pending(state, 1)

    outcome = state.optimization_history[-1].outcome
    assert outcome.error == "ERROR (code 7): nope"


def test_sudo_plans_are_wrapped(queue, monkeypatch):
    monkeypatch.setattr(task_queue, "ensure_sudo_credentials", lambda: True)
    state = DaemonState()
    queue.submit(state, DISK, Plan(command="apt-get clean", risk_level="high", requires_sudo=True))

    queue.execute_pending(state, 1, interactive=True)
    assert queue.executor.commands == ["sudo -n bash -c 'apt-get clean'"]
    assert state.optimization_history[-1].command == "apt-get clean"


def test_task_without_plan_is_consumed(queue):
    state = DaemonState()
    queue.submit(state, DISK, Plan(command="echo x", risk_level="high"))
    state.optimizations[0].plan = None

    result = queue.execute_pending(state, 1)
    assert not result.success
    assert state.optimizations == []


def test_clear_and_auto_approve(queue, store):
    state = DaemonState()
    queue.submit(state, DISK, Plan(command="echo a", risk_level="high"))
    queue.submit(state, DOCKER, Plan(command="echo b", risk_level="high"))

    assert queue.clear(state) == 2
    assert store.load().optimizations == []

    queue.set_auto_approve(state, True)
    assert store.load().auto_approve is True
