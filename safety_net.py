#!/usr/bin/env python3
"""
safety_net.py - Best-effort backups before a command touches config files

Any file under a protected prefix (default /etc/) that a command mentions is
copied to a timestamped sidecar (<path>.bak.<YYYYmmdd-HHMMSS>) before the
command runs. Commands that run under sudo get their backups taken with
`sudo -n cp -p`. A failed backup is logged and execution proceeds anyway.

Registered as a pre-execution hook on CommandExecutor:
    executor.add_hook(SafetyNet(["/etc/"]).before_execute)
"""

import logging
import re
import shlex
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from command_executor import PROBE_TIMEOUT, run_command

logger = logging.getLogger(__name__)

DEFAULT_PROTECTED_PREFIXES = ("/etc/",)

# Characters that terminate a path token inside a shell command
_PATH_CHARS = r"[^\s'\"`;|&<>(){}$,]+"


def find_protected_paths(command: str, prefixes: Sequence[str] = DEFAULT_PROTECTED_PREFIXES) -> List[str]:
    """Return protected paths referenced by a command, in order, without duplicates."""
    found: List[str] = []
    for prefix in prefixes:
        pattern = re.compile(r"(?<![\w./-])(" + re.escape(prefix) + _PATH_CHARS + r")")
        for match in pattern.finditer(command):
            path = match.group(1).rstrip(".:")
            if path not in found:
                found.append(path)
    return found


def backup_path(path: Path, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return path.with_name(f"{path.name}.bak.{stamp}")


def backup_file(path: Path, now: Optional[datetime] = None) -> Path:
    """Copy path to a timestamped sidecar. Raises OSError on failure."""
    backup = backup_path(path, now)
    shutil.copy2(path, backup)
    return backup


def backup_file_privileged(path: Path, now: Optional[datetime] = None) -> Path:
    """Same as backup_file, but copies as root via `sudo -n cp -p`.

    Used for commands that themselves run under sudo, whose targets the
    daemon user usually cannot write next to. Raises OSError on failure.
    """
    backup = backup_path(path, now)
    result = run_command(
        f"sudo -n cp -p {shlex.quote(str(path))} {shlex.quote(str(backup))}",
        timeout=PROBE_TIMEOUT
    )
    if not result.success:
        raise OSError(f"sudo cp failed: {result}")
    return backup


class SafetyNet:
    """Pre-execution hook that backs up protected files a command references."""

    def __init__(self, protected_prefixes: Iterable[str] = DEFAULT_PROTECTED_PREFIXES):
        self.protected_prefixes = tuple(protected_prefixes)

    def before_execute(self, command: str) -> List[Path]:
        privileged = command.startswith("sudo ")
        copy = backup_file_privileged if privileged else backup_file
        backups: List[Path] = []
        for raw in find_protected_paths(command, self.protected_prefixes):
            path = Path(raw)
            if not path.is_file():
                logger.debug(f"Not backing up {path}: not an existing file")
                continue
            try:
                backup = copy(path)
            except PermissionError as e:
                logger.warning(f"Backup of {path} failed: no permission as the daemon user ({e}); continuing without it")
                continue
            except OSError as e:
                logger.warning(f"Backup of {path} failed ({e}); continuing without it")
                continue
            logger.info(f"Backed up {path} -> {backup}")
            backups.append(backup)
        return backups
