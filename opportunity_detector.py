#!/usr/bin/env python3
"""
opportunity_detector.py - Threshold rules over a system profile

Pure function, no I/O. Rules fire independently and are always emitted in
the order memory, disk, docker.
"""

from dataclasses import dataclass
from typing import List, Mapping, Optional

from state_store import SystemProfile

MEMORY_THRESHOLD = 0.85  # used / total
DISK_THRESHOLD = 90      # percent


@dataclass(frozen=True)
class OptimizationOpportunity:
    type: str
    severity: str  # low, medium, high
    description: str
    suggestion: str


def _enabled(enabled: Optional[Mapping[str, bool]], opt_type: str) -> bool:
    return enabled is None or enabled.get(opt_type, True)


def detect(
    profile: SystemProfile,
    enabled: Optional[Mapping[str, bool]] = None
) -> List[OptimizationOpportunity]:
    opportunities: List[OptimizationOpportunity] = []

    ratio = profile.memory_used_ratio
    if _enabled(enabled, "memory") and ratio is not None and ratio > MEMORY_THRESHOLD:
        opportunities.append(OptimizationOpportunity(
            type="memory",
            severity="medium",
            description=f"Memory usage at {ratio * 100:.1f}%",
            suggestion="Consider clearing caches or identifying memory-hungry processes",
        ))

    disk = profile.disk_percent
    if _enabled(enabled, "disk") and disk is not None and disk > DISK_THRESHOLD:
        opportunities.append(OptimizationOpportunity(
            type="disk",
            severity="high",
            description=f"Disk usage at {disk}%",
            suggestion="Clean up old kernels, package cache, and temporary files",
        ))

    # Not a threshold: an active runtime always gets a periodic cleanup nudge
    if _enabled(enabled, "docker") and profile.docker_active:
        opportunities.append(OptimizationOpportunity(
            type="docker",
            severity="low",
            description="Docker runtime is active",
            suggestion="Clean up dangling Docker images, stopped containers and unused build cache",
        ))

    return opportunities
