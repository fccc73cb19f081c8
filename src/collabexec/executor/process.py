from __future__ import annotations

import asyncio
import os
import shutil
import signal
import tempfile
import time
from pathlib import Path
from typing import List, Optional

import structlog

from ..core.errors import ExecutionError, ExecutionTimeout
from ..core.models import RunOutput
from ..runner.output import BoundedOutput
from ..runner.rlimits import make_preexec
from . import cgroups
from .base import ExecSpec, Executor, SandboxContext, remove_workdir, render

log = structlog.get_logger(__name__)

READ_CHUNK = 4096
# after the process is gone, how long its pipes may stay open (orphaned grandchildren)
DRAIN_GRACE_S = 1.0

NAMESPACE_FLAGS = ["--user", "--map-root-user", "--net", "--pid", "--fork", "--mount", "--ipc", "--uts"]
CONFINE_TOOLS = ("unshare", "sh", "mount", "awk", "sort")
ISOLATION_MODES = ("namespaces", "none")

# Runs as root of the fresh user namespace. unshare --mount makes propagation
# private, so none of this reaches the host. Every reachable mount turns
# read-only, then the scratch dir is bound over itself and made writable.
CONFINE_SH = r"""
set -eu
scratch="$1"; shift
opts() {
    # flags of the topmost mount at $1 without rw/ro; locked flags must be restated
    awk -v m="$1" '$5 == m { n = split($6, o, ","); f = ""
        for (i = 1; i <= n; i++) if (o[i] != "rw" && o[i] != "ro") f = f "," o[i] }
        END { print f }' /proc/self/mountinfo
}
awk '{ print $5 }' /proc/self/mountinfo | sort -u | while IFS= read -r m; do
    p=$(printf '%b' "$m")
    [ -e "$p" ] || continue
    mount -n -o "remount,bind,ro$(opts "$m")" "$p"
done
mount -n --bind "$scratch" "$scratch"
mount -n -o "remount,bind,rw$(opts "$scratch")" "$scratch"
# fresh /proc for the new pid namespace; the read-only host view stays where this is refused
mount -n -t proc -o nosuid,nodev,noexec proc /proc 2>/dev/null || true
cd "$scratch"
exec "$@"
"""


def wrap_with_namespaces(argv: List[str], workdir: Path) -> List[str]:
    """
    Fresh user/net/pid/mount/ipc/uts namespaces: no network reachability,
    read-only filesystem except workdir.
    """
    tools = {}
    for name in CONFINE_TOOLS:
        tools[name] = shutil.which(name)
        if not tools[name]:
            raise ExecutionError(f"sandbox unavailable: '{name}' not found", reason="sandbox_unavailable")
    return [
        tools["unshare"], *NAMESPACE_FLAGS, "--",
        tools["sh"], "-c", CONFINE_SH, "cxe-confine", str(workdir), *argv,
    ]


class ProcessExecutor(Executor):
    """
    Runs each submission as a fresh host process group:
      - private scratch directory, removed on teardown
      - rlimits applied in the child (CPU, address space, files, core dumps)
      - namespaces with a read-only root and no network (isolation="namespaces")
      - optional cgroup v2 leaf
      - wall-clock watchdog that kills the whole process group
    """

    name = "process"

    def __init__(
        self,
        *,
        isolation: str = "namespaces",
        allow_unsafe: bool = False,
        use_cgroups: bool = False,
        rlimit_nproc: bool = False,
        scratch_root: Optional[Path] = None,
    ):
        self.isolation = (isolation or "namespaces").lower()
        if self.isolation not in ISOLATION_MODES:
            raise ValueError(f"unknown isolation mode: {isolation}")
        if self.isolation == "none":
            if not allow_unsafe:
                raise ValueError("isolation='none' runs submissions unconfined on the host; "
                                 "set allow_unsafe_isolation to opt in")
            log.warning("sandbox_unconfined", isolation=self.isolation)
        self.use_cgroups = use_cgroups
        self.rlimit_nproc = rlimit_nproc
        self.scratch_root = Path(scratch_root) if scratch_root else None
        if self.scratch_root:
            self.scratch_root.mkdir(parents=True, exist_ok=True)

    # ------------ lifecycle ------------

    async def allocate(self, spec: ExecSpec) -> SandboxContext:
        ctx = SandboxContext(execution_id=spec.execution_id)
        try:
            ctx.workdir = Path(tempfile.mkdtemp(prefix=f"cxe-{spec.execution_id}-", dir=self.scratch_root))
            ctx.extra["filename"] = spec.policy.filename
            ctx.source_path.write_text(spec.code, encoding="utf-8")
            if self.use_cgroups:
                leaf = cgroups.create_leaf(spec.execution_id)
                ctx.extra["cgroup"] = leaf
                cgroups.set_limits(leaf, spec.limits)
        except Exception as e:
            await self.teardown(ctx)
            raise ExecutionError(f"sandbox allocation failed: {e}") from e
        return ctx

    async def execute(self, ctx: SandboxContext, spec: ExecSpec) -> RunOutput:
        deadline = time.monotonic() + spec.limits.wall_timeout_ms / 1000
        values = {"file": str(ctx.source_path), "workdir": str(ctx.workdir)}

        if spec.policy.compile:
            compiled = await self._spawn(ctx, spec, render(spec.policy.compile, **values), "", deadline)
            if compiled.exit_status != 0:
                compiled.stage = "compile"
                return compiled

        return await self._spawn(ctx, spec, render(spec.policy.run, **values), spec.input, deadline)

    async def teardown(self, ctx: SandboxContext) -> None:
        for pid in ctx.pids:
            _killpg(pid)
        leaf = ctx.extra.get("cgroup")
        if leaf is not None:
            log.debug("cgroup_metrics", execution_id=ctx.execution_id, **{
                k.replace(".", "_"): v for k, v in cgroups.read_metrics(leaf).items()
            })
            # rmdir retries sleep between attempts
            await asyncio.get_running_loop().run_in_executor(None, cgroups.teardown, leaf)
        remove_workdir(ctx.workdir)

    # ---------- helpers ----------

    def _argv(self, argv: List[str], workdir: Path) -> List[str]:
        if self.isolation == "namespaces":
            return wrap_with_namespaces(argv, workdir)
        return argv

    def _env(self, ctx: SandboxContext) -> dict:
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(ctx.workdir),
            "TMPDIR": str(ctx.workdir),
            "LANG": "C.UTF-8",
            "PYTHONUNBUFFERED": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONHASHSEED": "random",
        }

    async def _spawn(self, ctx: SandboxContext, spec: ExecSpec, argv: List[str], stdin: str, deadline: float) -> RunOutput:
        limits = spec.limits
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._argv(argv, ctx.workdir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(ctx.workdir),
                env=self._env(ctx),
                preexec_fn=make_preexec(limits, nproc=self.rlimit_nproc),
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutionError(f"failed to start '{argv[0]}': {e}") from e

        ctx.pids.append(proc.pid)
        leaf = ctx.extra.get("cgroup")
        if leaf is not None:
            try:
                cgroups.attach(leaf, proc.pid)
            except OSError as e:
                _killpg(proc.pid)
                await proc.wait()
                raise ExecutionError(f"failed to attach to cgroup: {e}") from e

        out = BoundedOutput(limits.output_max_lines)
        err = BoundedOutput(limits.output_max_lines)
        readers = [
            asyncio.ensure_future(_pump(proc.stdout, out)),
            asyncio.ensure_future(_pump(proc.stderr, err)),
            asyncio.ensure_future(_feed_stdin(proc, stdin)),
        ]

        try:
            await asyncio.wait_for(proc.wait(), timeout=max(0.0, deadline - time.monotonic()))
        except asyncio.TimeoutError:
            _killpg(proc.pid)
            await proc.wait()
            await _finish_readers(readers, DRAIN_GRACE_S)
            log.info("sandbox_watchdog_fired", execution_id=spec.execution_id, timeout_ms=limits.wall_timeout_ms)
            raise ExecutionTimeout(
                limits.wall_timeout_ms,
                stdout=out.text(),
                stderr=err.text(),
                truncated=out.truncated or err.truncated,
            )

        # anything the program left behind in its group would hold the pipes open
        _killpg(proc.pid)
        await _finish_readers(readers, DRAIN_GRACE_S)
        return RunOutput(
            stdout=out.text(),
            stderr=err.text(),
            exit_status=_exit_status(proc.returncode),
            truncated=out.truncated or err.truncated,
        )


def _exit_status(rc: Optional[int]) -> int:
    if rc is None:
        return -1
    # killed by signal N -> 128 + N, like a shell reports it
    return 128 - rc if rc < 0 else rc


def _killpg(pid: int) -> None:
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


async def _pump(stream: Optional[asyncio.StreamReader], sink: BoundedOutput) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        sink.feed(chunk)


async def _feed_stdin(proc, data: str) -> None:
    if proc.stdin is None:
        return
    try:
        if data:
            proc.stdin.write(data.encode("utf-8"))
            await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        # program exited without reading its input
        pass
    finally:
        proc.stdin.close()


async def _finish_readers(readers, timeout: float) -> None:
    done, pending = await asyncio.wait(readers, timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
