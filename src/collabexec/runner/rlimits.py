from __future__ import annotations
import os
import resource
from typing import Callable, Optional

from ..core.models import ResourceLimits


def _set(which: int, value: int) -> None:
    soft, hard = resource.getrlimit(which)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(which, (value, value))


def apply_rlimits(limits: ResourceLimits, nproc: Optional[int] = None) -> None:
    """
    Process-level ceilings applied in the child right before exec: CPU time,
    address space, open files, file size, core dumps and optionally the
    per-user process count. A limit the OS refuses is skipped; cgroups and
    the wall-clock watchdog remain in force.
    """
    for which, value in (
        (resource.RLIMIT_CPU, limits.cpu_seconds),
        (resource.RLIMIT_NOFILE, limits.max_open_files),
        (resource.RLIMIT_FSIZE, limits.max_file_size_bytes),
        (resource.RLIMIT_CORE, 0),
    ):
        try:
            _set(which, value)
        except (ValueError, OSError):
            pass
    if limits.limit_address_space:
        try:
            _set(resource.RLIMIT_AS, limits.memory_bytes)
        except (ValueError, OSError):
            pass
    if nproc:
        try:
            _set(resource.RLIMIT_NPROC, nproc)
        except (ValueError, OSError):
            pass


def make_preexec(limits: ResourceLimits, nproc: bool = False) -> Callable[[], None]:
    # runs in the forked child, before execve
    def _preexec() -> None:
        apply_rlimits(limits, limits.max_processes if nproc else None)
        os.umask(0o077)

    return _preexec
