# ==========================================
# Error Taxonomy
# ==========================================
# A failed test run is not an exception: it is a VerificationOutcome with
# passed=False and drives a retry. Running out of attempts is not one either:
# it ends the run in RunState.EXHAUSTED with a failed TestRun.


class PipelineError(Exception):
    """Base class for errors that end a run."""

    # The Failed-state TestRun, attached once it has been recorded
    test_run = None


class UpstreamError(PipelineError):
    """The generation service was unreachable or returned something unusable."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ToolchainError(PipelineError):
    """cargo/scrypto could not be launched, or the package scaffold could not be created."""


class LedgerIOError(PipelineError):
    """The result ledger could not be written."""


class RunAborted(PipelineError):
    """The caller cancelled the run."""
