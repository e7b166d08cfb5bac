import logging
import os
import re
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

import config
from data_types import VerificationMode, VerificationOutcome
from errors import RunAborted, ToolchainError
from scrypto_template import REQUIRED_MARKERS

logger = logging.getLogger(__name__)

# ==========================================
# Verification Sandbox: real toolchain or simulation
# ==========================================

# Both must answer --version for the real toolchain to be used.
TOOLCHAIN_PROBES = [
    ["cargo", "--version"],
    ["scrypto", "--version"],
]

TEST_COMMAND = ["cargo", "test", "--release"]

# Either marker in the combined output counts as a pass.
SUCCESS_MARKERS = ["test result: ok", "running 0 tests"]

SIMULATED_PASS_OUTPUT = "test result: ok. 1 passed; 0 failed"

_PROJECT_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_-]*$")


def validate_project_name(project_name: str) -> str:
    """Project names become directory names and command arguments; keep them boring."""
    if not project_name or not _PROJECT_NAME_RE.match(project_name):
        raise ValueError(f"Invalid project name: {project_name!r}")
    return project_name


def write_artifact(path: Path, code: str) -> Path:
    """Writes the candidate before it is judged so it can be inspected afterwards."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(code, encoding="utf-8")
    return path


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kills the command and everything it spawned (cargo -> rustc, test binaries)."""
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        subprocess.run(["taskkill", "/F", "/T", "/PID", str(proc.pid)], capture_output=True)
        proc.kill()


def run_command(
    args: List[str],
    cwd: Path,
    timeout: float,
    cancel_event: Optional[threading.Event] = None,
    poll_interval: float = 0.5,
) -> Tuple[Optional[int], str, bool]:
    """
    Runs a command and waits for it under a hard wall-clock timeout.
    Returns (returncode, combined stdout+stderr, timed_out). On timeout or
    cancellation the whole process group is killed and whatever it printed
    is kept. Raises OSError if the command cannot be launched.
    """
    proc = subprocess.Popen(
        args,
        cwd=str(cwd),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        # own process group, so a kill reaches the grandchildren holding our pipes
        start_new_session=os.name == "posix",
    )
    deadline = time.monotonic() + timeout

    while True:
        remaining = deadline - time.monotonic()
        cancelled = cancel_event is not None and cancel_event.is_set()
        if remaining <= 0 or cancelled:
            _kill_process_tree(proc)
            stdout, stderr = proc.communicate()
            if cancelled:
                raise RunAborted(f"Cancelled while running {' '.join(args)}")
            return None, (stdout or "") + (stderr or ""), True
        try:
            stdout, stderr = proc.communicate(timeout=min(poll_interval, remaining))
        except subprocess.TimeoutExpired:
            continue
        return proc.returncode, (stdout or "") + (stderr or ""), False


class Verifier(Protocol):
    """Strategy chosen once per run; see select_backend()."""

    mode: VerificationMode

    def verify(self, code: str, project_name: str) -> VerificationOutcome: ...


class ScryptoToolchain:
    """Detects whether cargo and scrypto are installed."""

    def __init__(self, probes: Optional[List[List[str]]] = None, timeout: float = config.PROBE_TIMEOUT):
        self.probes = probes or TOOLCHAIN_PROBES
        self.timeout = timeout

    def _responds(self, args: List[str]) -> bool:
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Probe %s failed: %s", " ".join(args), e)
            return False
        return result.returncode == 0

    @property
    def is_ready(self) -> bool:
        # scrypto is only probed if cargo answered
        return all(self._responds(args) for args in self.probes)


class SimulationVerifier:
    """Text-marker checks standing in for a compiler when the toolchain is absent."""

    mode = VerificationMode.SIMULATED

    def __init__(self, output_dir: str = config.OUTPUT_DIR):
        self.output_dir = Path(output_dir)

    @staticmethod
    def missing_markers(code: str) -> List[str]:
        """Returns the message for every required marker absent from the code."""
        return [message for marker, message in REQUIRED_MARKERS if marker not in code]

    def verify(self, code: str, project_name: str) -> VerificationOutcome:
        validate_project_name(project_name)
        artifact = write_artifact(self.output_dir / f"{project_name}.rs", code)

        missing = self.missing_markers(code)
        if not missing:
            return VerificationOutcome(
                passed=True,
                diagnostic_text="",
                mode=self.mode,
                artifact_path=str(artifact),
                output=SIMULATED_PASS_OUTPUT,
            )

        diagnostic = "Simulation validation failed:\n" + "".join(f"- {msg}\n" for msg in missing)
        return VerificationOutcome(
            passed=False,
            diagnostic_text=diagnostic,
            mode=self.mode,
            artifact_path=str(artifact),
            output=diagnostic,
        )


class ScryptoSandbox:
    """Builds and tests the candidate inside a scrypto package with cargo."""

    mode = VerificationMode.REAL

    def __init__(
        self,
        output_dir: str = config.OUTPUT_DIR,
        timeout: int = config.TEST_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.output_dir = Path(output_dir)
        self.timeout = timeout
        self.cancel_event = cancel_event

    def ensure_project(self, project_name: str) -> Path:
        """Scaffolds the package on first use; later attempts reuse it untouched."""
        project_dir = self.output_dir / validate_project_name(project_name)
        if project_dir.is_dir():
            return project_dir

        self.output_dir.mkdir(parents=True, exist_ok=True)
        args = ["scrypto", "new-package", project_name]
        logger.info("Scaffolding scrypto package %s in %s", project_name, self.output_dir)
        try:
            returncode, output, timed_out = run_command(args, self.output_dir, self.timeout, self.cancel_event)
        except OSError as e:
            raise ToolchainError(f"Failed to launch {' '.join(args)}: {e}") from e
        if timed_out or returncode != 0 or not project_dir.is_dir():
            raise ToolchainError(f"'{' '.join(args)}' failed:\n{output}")
        return project_dir

    def verify(self, code: str, project_name: str) -> VerificationOutcome:
        # Kept even if scaffolding fails below; same path the simulation uses
        write_artifact(self.output_dir / f"{validate_project_name(project_name)}.rs", code)
        project_dir = self.ensure_project(project_name)
        lib_path = write_artifact(project_dir / "src" / "lib.rs", code)

        try:
            returncode, output, timed_out = run_command(TEST_COMMAND, project_dir, self.timeout, self.cancel_event)
        except OSError as e:
            raise ToolchainError(f"Failed to launch {' '.join(TEST_COMMAND)}: {e}") from e

        if timed_out:
            logger.warning("Test run for %s timed out after %ss", project_name, self.timeout)
            diagnostic = output or f"Test run timed out after {self.timeout}s with no output."
            return VerificationOutcome(False, diagnostic, self.mode, str(lib_path), output)

        passed = returncode == 0 and any(marker in output for marker in SUCCESS_MARKERS)
        if passed:
            return VerificationOutcome(True, "", self.mode, str(lib_path), output)

        diagnostic = output or f"{' '.join(TEST_COMMAND)} exited with code {returncode} and no output."
        return VerificationOutcome(False, diagnostic, self.mode, str(lib_path), output)


def select_backend(
    output_dir: str = config.OUTPUT_DIR,
    timeout: int = config.TEST_TIMEOUT,
    force_simulation: bool = False,
    toolchain: Optional[ScryptoToolchain] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Verifier:
    """Probes the toolchain once and returns the verifier the whole run will use."""
    toolchain = toolchain or ScryptoToolchain()
    if not force_simulation and toolchain.is_ready:
        logger.info("cargo and scrypto found. Using the real toolchain.")
        return ScryptoSandbox(output_dir=output_dir, timeout=timeout, cancel_event=cancel_event)

    if force_simulation:
        logger.info("Simulation mode forced.")
    else:
        logger.info("Cargo/Scrypto not installed. Running in simulation mode.")
    return SimulationVerifier(output_dir=output_dir)


# ==========================================
# CLI: check the toolchain or verify a file by hand
# ==========================================
if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="Check the Scrypto toolchain or verify a source file")
    parser.add_argument("--check", action="store_true", help="Report which verification mode would be used")
    parser.add_argument("--verify", metavar="FILE", help="Verify a Scrypto source file")
    parser.add_argument("--project", default="manual_check", help="Project name for --verify")
    parser.add_argument("--simulate", action="store_true", help="Force simulation mode")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    backend = select_backend(force_simulation=args.simulate)

    if args.check:
        print(f"Verification mode: {backend.mode.value}")

    if args.verify:
        source = Path(args.verify).read_text(encoding="utf-8")
        outcome = backend.verify(source, args.project)
        print(f"Passed: {outcome.passed}")
        print(f"Artifact: {outcome.artifact_path}")
        if outcome.diagnostic_text:
            print(outcome.diagnostic_text)
