from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

# ==========================================
# Core Data Models
# ==========================================


class VerificationMode(str, Enum):
    REAL = "real"
    SIMULATED = "simulated"


class RunState(str, Enum):
    """States of a single generate-verify-retry run."""
    GENERATING = "generating"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted_retries"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.EXHAUSTED, RunState.FAILED)


@dataclass(frozen=True)
class GenerationRequest:
    """Input to one generation call. Built fresh for every attempt."""
    task_description: str
    prior_failure_text: Optional[str] = None

    @property
    def is_retry(self) -> bool:
        return bool(self.prior_failure_text)


@dataclass(frozen=True)
class GenerationResult:
    source_code: str
    raw_text: str
    model_id: str
    usage: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class VerificationOutcome:
    passed: bool
    diagnostic_text: str
    mode: VerificationMode
    artifact_path: str
    output: str = ""


@dataclass(frozen=True)
class AttemptRecord:
    """One generation + verification cycle."""
    attempt_index: int
    generation: GenerationResult
    verification: VerificationOutcome


@dataclass(frozen=True)
class ProgressEvent:
    """Streamed to the caller while a run is in flight."""
    state: RunState
    attempt_index: int
    max_attempts: int
    message: str = ""
    diagnostic_text: Optional[str] = None


@dataclass(frozen=True)
class TestRun:
    """Persisted outcome of one complete run."""
    __test__ = False  # not a pytest class

    id: str
    timestamp: str
    task_description: str
    project_name: str
    success: bool
    total_attempts: int
    retry_count: int
    final_source_code: str
    final_diagnostic: Optional[str]
    final_output: Optional[str]
    duration_ms: int
    mode: VerificationMode

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestRun":
        return cls(
            id=str(data["id"]),
            timestamp=str(data["timestamp"]),
            task_description=data["task_description"],
            project_name=data["project_name"],
            success=bool(data["success"]),
            total_attempts=int(data["total_attempts"]),
            retry_count=int(data["retry_count"]),
            final_source_code=data.get("final_source_code", ""),
            final_diagnostic=data.get("final_diagnostic"),
            final_output=data.get("final_output"),
            duration_ms=int(data.get("duration_ms", 0)),
            mode=VerificationMode(data["mode"]),
        )


@dataclass(frozen=True)
class LedgerStatistics:
    total: int
    passed: int
    failed: int
    success_rate_percent: float
    average_retries: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunReport:
    """Everything a finished run produced, including the in-memory attempt history."""
    state: RunState
    test_run: TestRun
    attempts: List[AttemptRecord] = field(default_factory=list)
    error: Optional[Exception] = None
