from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from ..core.errors import InternalError
from ..core.models import ResourceLimits, RunOutput
from ..settings import LanguagePolicy

log = structlog.get_logger(__name__)


@dataclass
class ExecSpec:
    execution_id: str
    language: str
    policy: LanguagePolicy
    code: str
    input: str
    limits: ResourceLimits


@dataclass
class SandboxContext:
    """Per-execution handles a backend needs to tear down. Never shared."""
    execution_id: str
    workdir: Optional[Path] = None
    pids: List[int] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def source_path(self) -> Path:
        assert self.workdir is not None
        return self.workdir / self.extra.get("filename", "main")


def render(argv: List[str], **values: str) -> List[str]:
    return [part.format(**values) for part in argv]


class Executor:
    """Sandbox lifecycle: allocate -> execute -> teardown.

    `run` guarantees teardown on every exit path (normal exit, execution
    error, timeout, cancellation). A teardown failure is logged as an
    internal fault and never replaces the execution outcome.
    """

    name = "base"

    async def allocate(self, spec: ExecSpec) -> SandboxContext:
        raise NotImplementedError

    async def execute(self, ctx: SandboxContext, spec: ExecSpec) -> RunOutput:
        raise NotImplementedError

    async def teardown(self, ctx: SandboxContext) -> None:
        raise NotImplementedError

    async def run(self, spec: ExecSpec) -> RunOutput:
        ctx = await self.allocate(spec)
        try:
            return await self.execute(ctx, spec)
        finally:
            try:
                await self.teardown(ctx)
            except Exception as e:
                fault = InternalError(f"sandbox teardown failed: {e}")
                log.error(
                    "sandbox_teardown_failed",
                    execution_id=spec.execution_id,
                    backend=self.name,
                    reason=fault.reason,
                    error=str(e),
                )

    async def close(self) -> None:
        """Release backend-wide resources (clients, pools)."""


def remove_workdir(workdir: Optional[Path]) -> None:
    if workdir is not None and workdir.exists():
        shutil.rmtree(workdir)
