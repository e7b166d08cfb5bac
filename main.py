import argparse
import json
import logging
import re
import sys
import threading
from typing import Callable, Dict, Optional

import config
from agent import RetryOrchestrator
from data_types import ProgressEvent, RunState, TestRun
from errors import PipelineError
from generator import GenerationClient
from ledger import ResultLedger
from sandbox import ScryptoToolchain, select_backend

DEFAULT_PROJECT_NAME = "test_blueprint"

# ==========================================
# Entry points used by the UI layer
# ==========================================


def default_project_name(task_description: str) -> str:
    """'Create a simple NFT blueprint' -> 'create_a_simple_nft_blueprint'."""
    name = re.sub(r"[^a-z0-9]+", "_", task_description.lower())[:30]
    return name or DEFAULT_PROJECT_NAME


def submit(
    task_description: str,
    ledger: ResultLedger,
    project_name: Optional[str] = None,
    generator: Optional[GenerationClient] = None,
    max_attempts: int = config.MAX_ATTEMPTS,
    output_dir: str = config.OUTPUT_DIR,
    force_simulation: bool = False,
    toolchain: Optional[ScryptoToolchain] = None,
    on_event: Optional[Callable[[ProgressEvent], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> TestRun:
    """
    Runs one generate-verify-retry cycle to completion and records it.

    The TestRun is appended to the ledger for every terminal state. If the run
    ended on an UpstreamError or ToolchainError, that error is re-raised after
    the record is saved, carrying the record as `error.test_run`.
    """
    if not task_description or not task_description.strip():
        raise ValueError("Task description is required")
    project_name = project_name or default_project_name(task_description)

    verifier = select_backend(
        output_dir=output_dir,
        force_simulation=force_simulation,
        toolchain=toolchain,
        cancel_event=cancel_event,
    )
    orchestrator = RetryOrchestrator(
        generator=generator or GenerationClient(),
        verifier=verifier,
        max_attempts=max_attempts,
        on_event=on_event,
        cancel_event=cancel_event,
    )
    report = orchestrator.run(task_description, project_name)
    ledger.append(report.test_run)

    if report.error is not None:
        report.error.test_run = report.test_run
        raise report.error
    return report.test_run


def list_results(ledger: ResultLedger) -> Dict[str, object]:
    return {"results": ledger.list(), "statistics": ledger.statistics()}


def clear_results(ledger: ResultLedger) -> None:
    ledger.clear()


# ==========================================
# CLI
# ==========================================


def _print_event(event: ProgressEvent) -> None:
    if event.state == RunState.SUCCEEDED:
        marker = "✅"
    elif event.state.is_terminal:
        marker = "❌"
    else:
        marker = "  "
    print(f"{marker} [{event.attempt_index}/{event.max_attempts}] {event.message}")


def _print_run(run: TestRun) -> None:
    status = "PASSED" if run.success else "FAILED"
    print(f"\n--- {run.project_name}: {status} ({run.mode.value} mode) ---")
    print(f"Attempts: {run.total_attempts} (retries: {run.retry_count}), {run.duration_ms} ms")
    if run.final_diagnostic:
        print(f"Diagnostic:\n{run.final_diagnostic}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Generate Scrypto blueprints with an LLM and verify them")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--results-file", default=config.RESULTS_FILE, help="Path to the result ledger")
    sub = parser.add_subparsers(dest="command", required=True)

    p_submit = sub.add_parser("submit", help="Generate and test a blueprint")
    p_submit.add_argument("task", help="Natural-language description of the blueprint")
    p_submit.add_argument("--project", help="Project name (default: derived from the task)")
    p_submit.add_argument("--max-attempts", type=int, default=config.MAX_ATTEMPTS)
    p_submit.add_argument("--output-dir", default=config.OUTPUT_DIR)
    p_submit.add_argument("--simulate", action="store_true", help="Skip the toolchain and use simulation mode")

    p_results = sub.add_parser("results", help="Show recorded runs and statistics")
    p_results.add_argument("--json", action="store_true", help="Print raw JSON")

    sub.add_parser("clear", help="Delete all recorded runs")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ledger = ResultLedger(path=args.results_file)

    if args.command == "submit":
        print(f"--- Running Task: {args.task[:50]}... ---")
        try:
            run = submit(
                args.task,
                ledger,
                project_name=args.project,
                max_attempts=args.max_attempts,
                output_dir=args.output_dir,
                force_simulation=args.simulate,
                on_event=_print_event,
            )
        except (PipelineError, ValueError) as e:
            print(f"❌ Error: {e}", file=sys.stderr)
            return 1
        _print_run(run)
        return 0 if run.success else 2

    if args.command == "results":
        data = list_results(ledger)
        stats = data["statistics"]
        if args.json:
            print(json.dumps({
                "results": [run.to_dict() for run in data["results"]],
                "statistics": stats.to_dict(),
            }, indent=2))
            return 0
        for run in data["results"]:
            status = "PASS" if run.success else "FAIL"
            print(f"{run.timestamp}  {status}  {run.project_name}  attempts={run.total_attempts}  {run.mode.value}")
        print(
            f"\nTotal: {stats.total}  Passed: {stats.passed}  Failed: {stats.failed}  "
            f"Success rate: {stats.success_rate_percent:.1f}%  Avg retries: {stats.average_retries:.2f}"
        )
        return 0

    clear_results(ledger)
    print("Results cleared")
    return 0


if __name__ == "__main__":
    sys.exit(main())
