#!/usr/bin/env python3
"""
telemetry.py - System profile collection

Cheap OS facts (hostname, memory, CPUs, load, uptime) come straight from
psutil. Everything else is probed with a short shell command through the
CommandExecutor; a probe that fails or times out records the sentinel
"unavailable" instead of aborting the collection.
"""

import logging
import platform
import socket
import time
from typing import Dict

import psutil

from command_executor import CommandExecutor, PROBE_TIMEOUT
from state_store import DaemonState, StateStore, SystemProfile, utc_now

logger = logging.getLogger(__name__)

UNAVAILABLE = "unavailable"

PROBES: Dict[str, str] = {
    "disk_usage": "df -P / | tail -1 | awk '{print $5}'",
    "upgradable_packages": "apt list --upgradable 2>/dev/null | grep -c upgradable || true",
    "docker_status": "systemctl is-active docker 2>/dev/null || true",
    "kernel_version": "uname -r",
    "node_version": "node --version 2>/dev/null || echo 'not installed'",
    "python_version": "python3 --version 2>/dev/null || echo 'not installed'",
}


class TelemetryCollector:
    def __init__(
        self,
        executor: CommandExecutor,
        store: StateStore,
        probe_timeout: float = PROBE_TIMEOUT
    ):
        self.executor = executor
        self.store = store
        self.probe_timeout = probe_timeout

    def _probe(self, name: str, command: str) -> str:
        result = self.executor.probe(command, timeout=self.probe_timeout)
        if not result.success:
            logger.warning(f"Probe {name} failed: {str(result)[:200]}")
            return UNAVAILABLE
        return result.output

    def _load_avg(self):
        try:
            return [float(v) for v in psutil.getloadavg()]
        except (AttributeError, OSError) as e:
            logger.debug(f"Load average unavailable: {e}")
            return [0.0, 0.0, 0.0]

    def snapshot(self) -> SystemProfile:
        """Gather a fresh profile without touching state."""
        vm = psutil.virtual_memory()
        profile = SystemProfile(
            hostname=socket.gethostname(),
            platform=platform.system().lower(),
            arch=platform.machine(),
            release=platform.release(),
            uptime=max(0.0, time.time() - psutil.boot_time()),
            total_mem=int(vm.total),
            free_mem=int(vm.available),
            cpus=psutil.cpu_count() or 1,
            load_avg=self._load_avg(),
            collected_at=utc_now(),
        )
        for name, command in PROBES.items():
            setattr(profile, name, self._probe(name, command))
        return profile

    def collect(self, state: DaemonState) -> SystemProfile:
        """Gather a profile, store it in state, and persist."""
        logger.info("Gathering system information...")
        profile = self.snapshot()
        state.system_profile = profile
        state.last_check = profile.collected_at
        self.store.save(state)
        return profile
