#!/usr/bin/env python3
"""
command_executor.py - Bounded-time shell command execution

Runs a command through a shell with a hard timeout and classifies the result
as one of four variants instead of a prefixed string:

    Ok(output)              exit code 0, trimmed stdout
    ExitError(code, output) non-zero exit, stderr (or stdout when stderr empty)
    Timeout(timeout)        timer fired first; the process group was killed
    SpawnError(message)     the shell itself could not be started

str(result) still renders the classic normalized form ("hi",
"ERROR (code 1): ...", "TIMEOUT: ...", "SPAWN ERROR: ...") for display.

Nothing raises past run_command() or CommandExecutor.execute().

Usage:
    from command_executor import CommandExecutor, run_command
    result = run_command("df -P /", timeout=10)
    if result.success:
        print(result.output)
"""

import logging
import os
import shlex
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional

from state_store import ExecutionOutcome

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/bash"
COMMAND_TIMEOUT = 300.0  # full remediation commands
PROBE_TIMEOUT = 10.0     # telemetry probes
REAP_TIMEOUT = 5.0


# =============================================================================
# RESULT VARIANTS
# =============================================================================

class ExecResult:
    """Base for the four execution outcomes."""

    success = False
    output = ""

    @property
    def error(self) -> Optional[str]:
        return None if self.success else str(self)

    def to_outcome(self) -> ExecutionOutcome:
        if self.success:
            return ExecutionOutcome(success=True, output=self.output)
        return ExecutionOutcome(success=False, output=self.output, error=str(self))


@dataclass
class Ok(ExecResult):
    output: str = ""
    success = True

    def __str__(self) -> str:
        return self.output


@dataclass
class ExitError(ExecResult):
    code: int
    output: str = ""

    def __str__(self) -> str:
        return f"ERROR (code {self.code}): {self.output}"


@dataclass
class Timeout(ExecResult):
    timeout: float
    output: str = ""

    def __str__(self) -> str:
        return f"TIMEOUT: command exceeded {self.timeout:g}s and was killed"


@dataclass
class SpawnError(ExecResult):
    message: str

    def __str__(self) -> str:
        return f"SPAWN ERROR: {self.message}"


# =============================================================================
# EXECUTION
# =============================================================================

def _kill_process_group(proc: subprocess.Popen) -> None:
    """SIGKILL the child's whole process group (it leads its own session)."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"killpg({proc.pid}) failed: {e}, killing shell only")
        try:
            proc.kill()
        except OSError as e:
            logger.warning(f"kill({proc.pid}) failed: {e}; child left running")


def run_command(
    command: str,
    timeout: float = COMMAND_TIMEOUT,
    shell: str = DEFAULT_SHELL
) -> ExecResult:
    """Run a shell command with a hard timeout. Never raises."""
    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            executable=shell,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except (OSError, ValueError, subprocess.SubprocessError) as e:
        return SpawnError(str(e))

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_group(proc)
        try:
            stdout, _ = proc.communicate(timeout=REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning(f"Child {proc.pid} still holding pipes after kill, abandoning it")
            for pipe in (proc.stdout, proc.stderr):
                if pipe:
                    pipe.close()
            stdout = ""
        return Timeout(timeout=timeout, output=(stdout or "").strip())

    if proc.returncode == 0:
        return Ok(stdout.strip())
    detail = stderr.strip() or stdout.strip()
    return ExitError(code=proc.returncode, output=detail)


def wrap_privileged(command: str) -> str:
    """Run command under sudo without ever prompting for a password."""
    return f"sudo -n bash -c {shlex.quote(command)}"


PreExecutionHook = Callable[[str], None]


class CommandExecutor:
    """run_command() plus pre-execution hooks (e.g. config backups).

    Hooks run in order before the command. A hook that raises is logged and
    skipped; it never prevents the command from running.
    """

    def __init__(
        self,
        shell: str = DEFAULT_SHELL,
        default_timeout: float = COMMAND_TIMEOUT,
        hooks: Optional[List[PreExecutionHook]] = None
    ):
        self.shell = shell
        self.default_timeout = default_timeout
        self.hooks: List[PreExecutionHook] = list(hooks or [])

    def add_hook(self, hook: PreExecutionHook) -> None:
        self.hooks.append(hook)

    def probe(self, command: str, timeout: float = PROBE_TIMEOUT) -> ExecResult:
        """Read-only command: no hooks, short timeout."""
        return run_command(command, timeout=timeout, shell=self.shell)

    def execute(self, command: str, timeout: Optional[float] = None) -> ExecResult:
        for hook in self.hooks:
            try:
                hook(command)
            except Exception as e:
                logger.warning(f"Pre-execution hook {getattr(hook, '__name__', hook)!r} failed: {e}")

        limit = self.default_timeout if timeout is None else timeout
        logger.info(f"Executing (timeout {limit:g}s): {command[:200]}")
        result = run_command(command, timeout=limit, shell=self.shell)
        if result.success:
            logger.info("Command succeeded")
        else:
            logger.warning(f"Command failed: {str(result)[:300]}")
        return result
