import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

import config
from data_types import (
    AttemptRecord,
    GenerationResult,
    ProgressEvent,
    RunReport,
    RunState,
    TestRun,
    VerificationOutcome,
)
from errors import RunAborted, ToolchainError, UpstreamError
from generator import GenerationClient
from sandbox import Verifier, validate_project_name

logger = logging.getLogger(__name__)

# ==========================================
# Generate -> Verify -> Retry Loop
# ==========================================


class RetryOrchestrator:
    """
    Drives one run: generate a candidate, verify it, and feed the failure back
    into the next generation until it passes or max_attempts is used up.

    The verifier is chosen by the caller before the run starts, so every
    attempt of a run is judged in the same mode. Attempt N+1 happens iff
    attempt N failed verification and N < max_attempts.
    """

    def __init__(
        self,
        generator: GenerationClient,
        verifier: Verifier,
        max_attempts: int = config.MAX_ATTEMPTS,
        feedback_char_limit: int = config.FEEDBACK_CHAR_LIMIT,
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.generator = generator
        self.verifier = verifier
        self.max_attempts = max_attempts
        self.feedback_char_limit = feedback_char_limit
        self.on_event = on_event
        self.cancel_event = cancel_event

    def _emit(self, state: RunState, attempt_index: int, message: str, diagnostic: Optional[str] = None) -> None:
        logger.info("[attempt %d/%d] %s", attempt_index, self.max_attempts, message)
        if self.on_event is not None:
            self.on_event(ProgressEvent(state, attempt_index, self.max_attempts, message, diagnostic))

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunAborted("Run cancelled by caller")

    def _feedback_from(self, verification: VerificationOutcome) -> str:
        # Prevent context overflow: the tail of a cargo log carries the errors
        return verification.diagnostic_text[-self.feedback_char_limit:]

    def run(self, task_description: str, project_name: str) -> RunReport:
        if not task_description or not task_description.strip():
            raise ValueError("Task description is required")
        validate_project_name(project_name)

        started = time.monotonic()
        attempts: List[AttemptRecord] = []
        attempt_index = 1
        feedback: Optional[str] = None
        last_generation: Optional[GenerationResult] = None
        last_verification: Optional[VerificationOutcome] = None
        error: Optional[Exception] = None

        while True:
            self._check_cancelled()
            self._emit(RunState.GENERATING, attempt_index, "Generating Scrypto code...")
            try:
                last_generation = self.generator.generate(task_description, feedback, cancel_event=self.cancel_event)
            except UpstreamError as e:
                logger.error("Generation failed on attempt %d: %s", attempt_index, e)
                state, error, last_verification = RunState.FAILED, e, None
                break

            self._check_cancelled()
            self._emit(RunState.VERIFYING, attempt_index, f"Verifying in {self.verifier.mode.value} mode...")
            try:
                last_verification = self.verifier.verify(last_generation.source_code, project_name)
            except ToolchainError as e:
                logger.error("Toolchain failed on attempt %d: %s", attempt_index, e)
                state, error, last_verification = RunState.FAILED, e, None
                break

            attempts.append(AttemptRecord(attempt_index, last_generation, last_verification))

            if last_verification.passed:
                state = RunState.SUCCEEDED
                break
            if attempt_index >= self.max_attempts:
                state = RunState.EXHAUSTED
                break

            feedback = self._feedback_from(last_verification)
            self._emit(
                RunState.GENERATING,
                attempt_index,
                f"Test failed. Retrying ({attempt_index + 1}/{self.max_attempts})...",
                diagnostic=last_verification.diagnostic_text,
            )
            attempt_index += 1

        if state == RunState.SUCCEEDED:
            final_diagnostic = None
            message = "Tests passed!"
        elif state == RunState.EXHAUSTED:
            final_diagnostic = last_verification.diagnostic_text
            message = "Tests failed after retries"
        else:
            final_diagnostic = f"{type(error).__name__}: {error}"
            message = f"Error: {error}"

        # A failed generation keeps the previous attempt's code as the latest snapshot
        test_run = TestRun(
            id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            task_description=task_description,
            project_name=project_name,
            success=state == RunState.SUCCEEDED,
            total_attempts=attempt_index,
            retry_count=attempt_index - 1,
            final_source_code=last_generation.source_code if last_generation else "",
            final_diagnostic=final_diagnostic,
            final_output=last_verification.output if last_verification else None,
            duration_ms=int((time.monotonic() - started) * 1000),
            mode=self.verifier.mode,
        )
        self._emit(state, attempt_index, message, diagnostic=final_diagnostic)
        return RunReport(state=state, test_run=test_run, attempts=attempts, error=error)
