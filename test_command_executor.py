#!/usr/bin/env python3
"""
test_command_executor.py - Bounded command execution tests
"""

import subprocess
import time

import command_executor
from command_executor import (
    CommandExecutor,
    ExitError,
    Ok,
    SpawnError,
    Timeout,
    run_command,
    wrap_privileged,
)


def test_success_returns_trimmed_stdout():
    result = run_command("echo hi")
    assert isinstance(result, Ok)
    assert str(result) == "hi"
    assert result.success
    assert result.error is None


def test_nonzero_exit():
    result = run_command("exit 1")
    assert isinstance(result, ExitError)
    assert result.code == 1
    assert str(result).startswith("ERROR (code 1)")


def test_nonzero_exit_prefers_stderr():
    result = run_command("echo out; echo problem >&2; exit 3")
    assert str(result) == "ERROR (code 3): problem"


def test_nonzero_exit_falls_back_to_stdout():
    result = run_command("echo only-out; exit 2")
    assert str(result) == "ERROR (code 2): only-out"


def test_timeout_kills_process():
    start = time.monotonic()
    result = run_command("sleep 10", timeout=0.1)
    elapsed = time.monotonic() - start

    assert isinstance(result, Timeout)
    assert str(result).startswith("TIMEOUT")
    assert elapsed < 5, f"timeout should return promptly, took {elapsed:.1f}s"


def test_timeout_kills_background_children():
    """Grandchildren holding the pipes are killed with the group"""
    start = time.monotonic()
    result = run_command("sleep 30 & sleep 30; wait", timeout=0.2)
    assert isinstance(result, Timeout)
    assert time.monotonic() - start < 10


def test_spawn_error_for_missing_shell(tmp_path):
    result = run_command("echo hi", shell=str(tmp_path / "no-such-shell"))
    assert isinstance(result, SpawnError)
    assert str(result).startswith("SPAWN ERROR")
    assert not result.success


def test_to_outcome():
    ok = run_command("echo fine").to_outcome()
    assert ok.success and ok.output == "fine" and ok.error is None

    failed = run_command("exit 4").to_outcome()
    assert not failed.success
    assert failed.error.startswith("ERROR (code 4)")


def test_hooks_run_before_command_and_failures_do_not_block():
    seen = []

    def record(command):
        seen.append(command)

    def explode(command):
        raise RuntimeError("hook broke")

    executor = CommandExecutor(hooks=[explode, record])
    result = executor.execute("echo ran")

    assert seen == ["echo ran"]
    assert str(result) == "ran"


def test_probe_skips_hooks():
    seen = []
    executor = CommandExecutor(hooks=[seen.append])
    assert str(executor.probe("echo probe")) == "probe"
    assert seen == []


def test_wrap_privileged_quotes_command():
    assert wrap_privileged("echo 'a b'") == "sudo -n bash -c 'echo '\"'\"'a b'\"'\"''"


def deny_signal(*args, **kwargs):
    raise PermissionError(1, "Operation not permitted")


def test_timeout_when_child_cannot_be_signalled(monkeypatch):
    """A root-owned group (sudo) refuses SIGKILL; the result is still a Timeout"""
    monkeypatch.setattr(command_executor.os, "killpg", deny_signal)
    monkeypatch.setattr(subprocess.Popen, "kill", deny_signal)

    result = run_command("sleep 1", timeout=0.1)

    assert isinstance(result, Timeout)
    assert result.to_outcome().error.startswith("TIMEOUT")


def test_unkillable_child_is_abandoned(monkeypatch):
    monkeypatch.setattr(command_executor.os, "killpg", deny_signal)
    monkeypatch.setattr(subprocess.Popen, "kill", deny_signal)
    monkeypatch.setattr(command_executor, "REAP_TIMEOUT", 0.1)

    start = time.monotonic()
    result = run_command("sleep 3", timeout=0.1)

    assert isinstance(result, Timeout)
    assert result.output == ""
    assert time.monotonic() - start < 2
