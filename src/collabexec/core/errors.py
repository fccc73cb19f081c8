from __future__ import annotations

from typing import Optional


class ExecutionEngineError(Exception):
    """Base class for every error the engine reports to callers."""

    reason = "engine_error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.message, "reason": self.reason}


# ---- admission: rejected before queueing, no side effects ----

class AdmissionError(ExecutionEngineError):
    reason = "admission_rejected"


class ConcurrentExecutionLimit(AdmissionError):
    reason = "concurrent_execution_limit"

    def __init__(self, user_id: str, room_id: str):
        super().__init__(
            "You already have code execution in progress. "
            "Please wait for it to complete."
        )
        self.user_id = user_id
        self.room_id = room_id


class QueueFull(AdmissionError):
    reason = "queue_full"

    def __init__(self, room_id: str, max_queue_size: int):
        super().__init__(
            f"Execution queue is full ({max_queue_size} waiting). "
            "Please wait for other executions to complete."
        )
        self.room_id = room_id
        self.max_queue_size = max_queue_size


# ---- validation: rejected before queueing ----

class ValidationError(ExecutionEngineError):
    reason = "validation_failed"

    def __init__(self, message: str, reason: Optional[str] = None, category: Optional[str] = None):
        super().__init__(message, reason)
        self.category = category

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.category:
            data["category"] = self.category
        return data


class UnsupportedLanguage(ValidationError):
    reason = "unsupported_language"

    def __init__(self, language: str, supported):
        super().__init__(
            f"Unsupported language '{language}'. Supported: {', '.join(sorted(supported))}"
        )
        self.language = language


# ---- after acceptance: captured as terminal statuses, never raised to callers ----

class ExecutionError(ExecutionEngineError):
    """Sandbox could not be allocated or the program could not be launched."""

    reason = "execution_error"


class ExecutionTimeout(ExecutionEngineError):
    reason = "timeout"

    def __init__(self, timeout_ms: int, stdout: str = "", stderr: str = "", truncated: bool = False):
        super().__init__(f"Execution timed out after {timeout_ms / 1000:g}s")
        self.timeout_ms = timeout_ms
        self.stdout = stdout
        self.stderr = stderr
        self.truncated = truncated


class InternalError(ExecutionEngineError):
    """Engine-side fault (e.g. sandbox teardown). Logged, never blocks delivery."""

    reason = "internal_error"


class ExecutionNotFound(ExecutionEngineError):
    reason = "execution_not_found"

    def __init__(self, execution_id: str):
        super().__init__(f"Execution '{execution_id}' not found")
        self.execution_id = execution_id
