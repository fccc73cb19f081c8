from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Status(str, Enum):
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (Status.QUEUED, Status.EXECUTING)


@dataclass(frozen=True)
class UserIdentity:
    """Identity tuple handed over by the session layer; trusted, not authenticated."""
    user_id: str
    display_name: str = ""
    avatar: Optional[str] = None


@dataclass(frozen=True)
class ResourceLimits:
    memory_bytes: int
    cpu_quota: float          # cores, e.g. 0.5 = half a CPU
    cpu_seconds: int          # RLIMIT_CPU backstop
    max_processes: int
    max_open_files: int
    max_file_size_bytes: int
    output_max_lines: int
    wall_timeout_ms: int
    limit_address_space: bool = True


@dataclass
class ExecutionRequest:
    id: str
    room_id: str
    user: UserIdentity
    language: str
    code: str
    input: str
    submitted_at: datetime
    status: Status = Status.QUEUED
    complexity: float = 0.0
    started_at: Optional[datetime] = None
    done: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)

    @property
    def user_id(self) -> str:
        return self.user.user_id


@dataclass
class RunOutput:
    """What a sandbox backend hands back for a program that ran to exit."""
    stdout: str
    stderr: str
    exit_status: int
    truncated: bool = False
    stage: str = "run"        # "compile" when a compile step failed


@dataclass(frozen=True)
class ExecutionResult:
    id: str
    room_id: str
    user_id: str
    display_name: str
    avatar: Optional[str]
    language: str
    status: Status
    stdout: str
    stderr: str
    started_at: Optional[datetime]
    ended_at: datetime
    duration_ms: int
    exit_status: Optional[int] = None
    error: Optional[str] = None
    complexity: float = 0.0
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        data["ended_at"] = self.ended_at.isoformat()
        return data
