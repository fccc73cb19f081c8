from __future__ import annotations

import asyncio
import shlex
import tempfile
import time
from pathlib import Path
from typing import Optional

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import Ulimit

from ..core.errors import ExecutionError, ExecutionTimeout
from ..core.models import RunOutput
from ..runner.output import BoundedOutput
from .base import ExecSpec, Executor, SandboxContext, remove_workdir, render

log = structlog.get_logger(__name__)

WORKDIR = "/workspace"
TMPFS = {"/tmp": "rw,noexec,nosuid,size=16m"}
SANDBOX_USER = "65534:65534"  # nobody
COMPILE_FAILED_STATUS = 97


class DockerExecutor(Executor):
    """One throwaway container per execution.

    No network, read-only root, small tmpfs scratch, the submission bound
    at /workspace, memory/CPU/pids ceilings and ulimits. The container is
    force-removed on teardown whatever happened inside it.
    """

    name = "docker"

    def __init__(self, client=None, scratch_root: Optional[Path] = None, pull_missing: bool = True):
        self.client = client or docker.from_env()
        self.scratch_root = Path(scratch_root) if scratch_root else None
        self.pull_missing = pull_missing

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.get_running_loop().run_in_executor(None, lambda: fn(*args, **kwargs))

    # ------------ lifecycle ------------

    async def allocate(self, spec: ExecSpec) -> SandboxContext:
        ctx = SandboxContext(execution_id=spec.execution_id)
        try:
            ctx.workdir = Path(tempfile.mkdtemp(prefix=f"cxe-{spec.execution_id}-", dir=self.scratch_root))
            # the container user is unprivileged and must be able to write build output
            ctx.workdir.chmod(0o777)
            ctx.extra["filename"] = spec.policy.filename
            ctx.source_path.write_text(spec.code, encoding="utf-8")
            (ctx.workdir / "input.txt").write_text(spec.input or "", encoding="utf-8")
            await self._ensure_image(spec.policy.image)
            ctx.extra["container"] = await self._call(self._create_container, ctx, spec)
        except Exception as e:
            await self.teardown(ctx)
            raise ExecutionError(f"sandbox allocation failed: {e}") from e
        return ctx

    async def execute(self, ctx: SandboxContext, spec: ExecSpec) -> RunOutput:
        container = ctx.extra["container"]
        timeout_s = spec.limits.wall_timeout_ms / 1000
        try:
            await self._call(container.start)
        except (APIError, DockerException) as e:
            raise ExecutionError(f"failed to start container: {e}") from e

        start = time.monotonic()
        try:
            status = await asyncio.wait_for(self._call(container.wait), timeout=timeout_s)
        except asyncio.TimeoutError:
            await self._kill(container)
            out, err = await self._logs(container, spec)
            log.info("sandbox_watchdog_fired", execution_id=spec.execution_id, timeout_ms=spec.limits.wall_timeout_ms)
            raise ExecutionTimeout(
                spec.limits.wall_timeout_ms,
                stdout=out.text(),
                stderr=err.text(),
                truncated=out.truncated or err.truncated,
            )

        exit_status = int((status or {}).get("StatusCode", -1))
        out, err = await self._logs(container, spec)
        log.debug("container_exited", execution_id=spec.execution_id, exit_status=exit_status,
                  elapsed_ms=int((time.monotonic() - start) * 1000))
        stage = "run"
        if spec.policy.compile and exit_status == COMPILE_FAILED_STATUS:
            stage = "compile"
        return RunOutput(
            stdout=out.text(),
            stderr=err.text(),
            exit_status=exit_status,
            truncated=out.truncated or err.truncated,
            stage=stage,
        )

    async def teardown(self, ctx: SandboxContext) -> None:
        container = ctx.extra.get("container")
        try:
            if container is not None:
                try:
                    await self._call(container.remove, force=True)
                except NotFound:
                    log.warning("container_already_gone", execution_id=ctx.execution_id)
        finally:
            remove_workdir(ctx.workdir)

    async def close(self) -> None:
        await self._call(self.client.close)

    # ---------- helpers ----------

    def _script(self, spec: ExecSpec) -> str:
        values = {"file": f"{WORKDIR}/{spec.policy.filename}", "workdir": WORKDIR}
        run = " ".join(shlex.quote(p) for p in render(spec.policy.run, **values))
        script = f"{run} < {WORKDIR}/input.txt"
        if spec.policy.compile:
            build = " ".join(shlex.quote(p) for p in render(spec.policy.compile, **values))
            script = f"{build} || exit {COMPILE_FAILED_STATUS}; {script}"
        return script

    def _create_container(self, ctx: SandboxContext, spec: ExecSpec):
        """Create (not start) the container; sync, runs in executor."""
        limits = spec.limits
        return self.client.containers.create(
            spec.policy.image,
            command=["/bin/sh", "-c", self._script(spec)],
            name=f"cxe-{spec.execution_id}",
            working_dir=WORKDIR,
            user=SANDBOX_USER,
            environment={
                "PYTHONUNBUFFERED": "1",
                "PYTHONDONTWRITEBYTECODE": "1",
                "PYTHONHASHSEED": "random",
                "HOME": "/tmp",
                "TMPDIR": "/tmp",
            },
            # resource ceilings
            mem_limit=limits.memory_bytes,
            memswap_limit=limits.memory_bytes,
            nano_cpus=int(limits.cpu_quota * 1e9),
            pids_limit=limits.max_processes,
            ulimits=[
                Ulimit(name="nofile", soft=limits.max_open_files, hard=limits.max_open_files),
                Ulimit(name="fsize", soft=limits.max_file_size_bytes, hard=limits.max_file_size_bytes),
                Ulimit(name="core", soft=0, hard=0),
            ],
            # isolation
            network_mode="none",
            read_only=True,
            tmpfs=TMPFS,
            volumes={str(ctx.workdir): {"bind": WORKDIR, "mode": "rw"}},
            cap_drop=["ALL"],
            security_opt=["no-new-privileges"],
            labels={"collabexec": "true", "execution-id": spec.execution_id},
            detach=True,
        )

    async def _ensure_image(self, image: str) -> None:
        try:
            await self._call(self.client.images.get, image)
        except ImageNotFound:
            if not self.pull_missing:
                raise
            log.info("pulling_image", image=image)
            await self._call(self.client.images.pull, image)

    async def _kill(self, container) -> None:
        try:
            await self._call(container.kill)
        except (NotFound, APIError):
            # already exited between the watchdog firing and the kill
            pass

    async def _logs(self, container, spec: ExecSpec):
        out = BoundedOutput(spec.limits.output_max_lines)
        err = BoundedOutput(spec.limits.output_max_lines)
        tail = spec.limits.output_max_lines + 1
        try:
            out.feed(await self._call(container.logs, stdout=True, stderr=False, tail=tail))
            err.feed(await self._call(container.logs, stdout=False, stderr=True, tail=tail))
        except (NotFound, APIError) as e:
            log.warning("container_logs_unavailable", execution_id=spec.execution_id, error=str(e))
        return out, err
