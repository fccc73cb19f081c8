# cgroup v2 leaf per execution: memory.max, pids.max, cpu.max
from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Dict, Optional

from ..core.models import ResourceLimits

CGROOT = Path("/sys/fs/cgroup")
CPU_PERIOD_US = 100_000
CONTROLLERS = ("memory", "pids", "cpu")
METRIC_FILES = ("memory.current", "memory.peak", "pids.current", "cpu.stat")


def _write_checked(path: Path, value) -> None:
    text = str(value)
    path.write_text(text)
    got = path.read_text().strip()
    if got != text:
        raise RuntimeError(f"cgroup file {path} holds '{got}' after writing '{text}'")


def ensure_v2() -> None:
    if not (CGROOT / "cgroup.controllers").exists():
        raise RuntimeError("cgroup v2 is required")


def own_cgroup() -> Path:
    # unified hierarchy entry looks like '0::/user.slice/...'
    for entry in Path("/proc/self/cgroup").read_text().splitlines():
        hierarchy, _, rel = entry.partition("::")
        if hierarchy == "0":
            return (CGROOT / rel.strip().lstrip("/")).resolve()
    return CGROOT


def get_base() -> Path:
    """Parent for execution leaves: CXE_CGROUP_BASE, else <own cgroup>/cxe."""
    override = os.environ.get("CXE_CGROUP_BASE")
    if not override:
        return own_cgroup() / "cxe"
    base = Path(override)
    if CGROOT not in base.parents and base != CGROOT:
        raise ValueError(f"CXE_CGROUP_BASE must live under {CGROOT}, got {base}")
    return base


def _enable_controllers(node: Path) -> None:
    """Delegate memory/pids/cpu to the children of node. node must hold no PIDs."""
    available_file = node / "cgroup.controllers"
    if not available_file.exists():
        return
    available = available_file.read_text().split()
    wanted = [f"+{name}" for name in CONTROLLERS if name in available]
    if not wanted:
        return
    if (node / "cgroup.procs").read_text().strip():
        raise PermissionError(f"{node} has member processes, subtree_control stays untouched")
    (node / "cgroup.subtree_control").write_text(" ".join(wanted))


def create_leaf(execution_id: str) -> Path:
    ensure_v2()
    base = get_base()
    base.mkdir(parents=True, exist_ok=True)
    _enable_controllers(base)
    leaf = base / execution_id
    leaf.mkdir(exist_ok=True)
    return leaf


def set_limits(leaf: Path, limits: ResourceLimits) -> None:
    _write_checked(leaf / "memory.max", limits.memory_bytes)
    swap = leaf / "memory.swap.max"
    # absent when swap accounting is off
    if swap.exists():
        _write_checked(swap, 0)
    _write_checked(leaf / "pids.max", limits.max_processes)
    quota_us = max(1000, int(limits.cpu_quota * CPU_PERIOD_US))
    (leaf / "cpu.max").write_text(f"{quota_us} {CPU_PERIOD_US}")


def attach(leaf: Path, pid: int) -> None:
    (leaf / "cgroup.procs").write_text(str(pid))


def read_metrics(leaf: Path) -> Dict[str, str]:
    return {
        name: (leaf / name).read_text().strip()
        for name in METRIC_FILES
        if (leaf / name).exists()
    }


def kill_all(leaf: Path) -> None:
    kill_file = leaf / "cgroup.kill"
    if kill_file.exists():
        kill_file.write_text("1")


def teardown(leaf: Optional[Path], attempts: int = 10) -> None:
    if leaf is None or not leaf.exists():
        return
    kill_all(leaf)
    # rmdir only succeeds once every member has exited
    error: Optional[OSError] = None
    for _ in range(attempts):
        try:
            leaf.rmdir()
            return
        except OSError as e:
            error = e
            time.sleep(0.05)
    raise RuntimeError(f"cgroup leaf {leaf} not removed: {error}")
