import threading
import time

import pytest

import sandbox
from agent import RetryOrchestrator
from conftest import VALID_BLUEPRINT, FakeOpenAI, completion, fenced
from data_types import GenerationResult, RunState, VerificationMode, VerificationOutcome
from errors import RunAborted, ToolchainError, UpstreamError
from generator import GenerationClient
from sandbox import ScryptoSandbox, SimulationVerifier

NO_TESTS = VALID_BLUEPRINT.replace("#[test]", "")
NO_IMPORT = VALID_BLUEPRINT.replace("use scrypto::prelude::*;", "")


class ScriptedGenerator:
    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls = []

    def generate(self, task_description, prior_failure_text=None, cancel_event=None):
        self.calls.append((task_description, prior_failure_text))
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return GenerationResult(source_code=output, raw_text=output, model_id="scripted")


class ScriptedVerifier:
    mode = VerificationMode.REAL

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def verify(self, code, project_name):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _fail(diagnostic):
    return VerificationOutcome(False, diagnostic, VerificationMode.REAL, "/tmp/lib.rs", diagnostic)


def _pass():
    return VerificationOutcome(True, "", VerificationMode.REAL, "/tmp/lib.rs", "test result: ok")


# ============================================================
# Scenarios
# ============================================================

def test_succeeds_on_third_attempt_with_feedback(tmp_path):
    fake = FakeOpenAI([completion(fenced(NO_TESTS)), completion(fenced(NO_IMPORT)), completion(fenced(VALID_BLUEPRINT))])
    orchestrator = RetryOrchestrator(
        generator=GenerationClient(client=fake),
        verifier=SimulationVerifier(output_dir=str(tmp_path)),
        max_attempts=3,
    )
    report = orchestrator.run("mint a fungible token", "mint_a_fungible_token")

    assert report.state == RunState.SUCCEEDED
    assert report.test_run.success
    assert report.test_run.total_attempts == 3
    assert report.test_run.retry_count == 2
    assert report.test_run.final_diagnostic is None
    assert report.test_run.final_source_code == VALID_BLUEPRINT
    assert report.test_run.mode == VerificationMode.SIMULATED
    assert [a.attempt_index for a in report.attempts] == [1, 2, 3]

    second_system = fake.requests[1]["messages"][0]["content"]
    third_system = fake.requests[2]["messages"][0]["content"]
    assert "- Missing test cases" in second_system
    assert "- Missing scrypto imports" in third_system
    assert "- Missing test cases" not in third_system


def test_simulated_mode_passes_first_time(tmp_path):
    generator = ScriptedGenerator([VALID_BLUEPRINT])
    report = RetryOrchestrator(generator, SimulationVerifier(output_dir=str(tmp_path))).run("vault", "vault")

    assert report.state == RunState.SUCCEEDED
    assert report.test_run.total_attempts == 1
    assert report.test_run.retry_count == 0
    assert report.test_run.mode == VerificationMode.SIMULATED
    assert report.test_run.final_output == "test result: ok. 1 passed; 0 failed"
    assert generator.calls == [("vault", None)]


def test_exhausts_budget():
    generator = ScriptedGenerator(["a", "b", "c"])
    verifier = ScriptedVerifier([_fail("one"), _fail("two"), _fail("three")])
    report = RetryOrchestrator(generator, verifier, max_attempts=3).run("task", "proj")

    assert report.state == RunState.EXHAUSTED
    assert report.error is None
    assert not report.test_run.success
    assert report.test_run.total_attempts == 3
    assert report.test_run.retry_count == 2
    assert report.test_run.final_diagnostic == "three"
    assert report.test_run.final_source_code == "c"
    assert [prior for _, prior in generator.calls] == [None, "one", "two"]


def test_single_attempt_budget_never_retries():
    generator = ScriptedGenerator(["a"])
    report = RetryOrchestrator(generator, ScriptedVerifier([_fail("nope")]), max_attempts=1).run("task", "proj")

    assert report.state == RunState.EXHAUSTED
    assert report.test_run.total_attempts == 1
    assert len(generator.calls) == 1


def test_upstream_error_on_first_attempt_is_fatal():
    generator = ScriptedGenerator([UpstreamError("502 from provider")])
    verifier = ScriptedVerifier([])
    report = RetryOrchestrator(generator, verifier).run("task", "proj")

    assert report.state == RunState.FAILED
    assert isinstance(report.error, UpstreamError)
    assert not report.test_run.success
    assert report.test_run.total_attempts == 1
    assert report.test_run.final_source_code == ""
    assert "502 from provider" in report.test_run.final_diagnostic
    assert verifier.calls == 0


def test_upstream_error_mid_run_keeps_latest_code():
    generator = ScriptedGenerator(["first try", UpstreamError("timeout")])
    report = RetryOrchestrator(generator, ScriptedVerifier([_fail("bad")])).run("task", "proj")

    assert report.state == RunState.FAILED
    assert report.test_run.total_attempts == 2
    assert report.test_run.retry_count == 1
    assert report.test_run.final_source_code == "first try"
    assert report.test_run.final_output is None
    assert len(report.attempts) == 1


def test_toolchain_error_is_fatal_and_not_retried():
    generator = ScriptedGenerator(["a", "b"])
    verifier = ScriptedVerifier([ToolchainError("cargo: not found")])
    report = RetryOrchestrator(generator, verifier).run("task", "proj")

    assert report.state == RunState.FAILED
    assert isinstance(report.error, ToolchainError)
    assert len(generator.calls) == 1
    assert report.test_run.final_source_code == "a"


def test_real_mode_timeout_is_retried(tmp_path, monkeypatch):
    (tmp_path / "token" / "src").mkdir(parents=True)
    results = [(None, "Compiling token v0.1.0", True), (0, "test result: ok. 1 passed", False)]
    monkeypatch.setattr(sandbox, "run_command", lambda *a, **kw: results.pop(0))
    generator = ScriptedGenerator([VALID_BLUEPRINT, VALID_BLUEPRINT])

    report = RetryOrchestrator(generator, ScryptoSandbox(output_dir=str(tmp_path))).run("token", "token")

    assert report.state == RunState.SUCCEEDED
    assert report.test_run.total_attempts == 2
    assert report.test_run.mode == VerificationMode.REAL
    assert generator.calls[1][1] == "Compiling token v0.1.0"


def test_feedback_is_truncated_to_tail():
    generator = ScriptedGenerator(["a", "b"])
    long_log = "x" * 100 + "the real error"
    orchestrator = RetryOrchestrator(generator, ScriptedVerifier([_fail(long_log), _pass()]), feedback_char_limit=20)
    orchestrator.run("task", "proj")

    assert generator.calls[1][1] == long_log[-20:]
    assert generator.calls[1][1].endswith("the real error")


# ============================================================
# Events, cancellation, validation
# ============================================================

def test_progress_events_follow_state_machine():
    events = []
    generator = ScriptedGenerator(["a", "b"])
    orchestrator = RetryOrchestrator(generator, ScriptedVerifier([_fail("bad"), _pass()]), on_event=events.append)
    orchestrator.run("task", "proj")

    states = [(e.state, e.attempt_index) for e in events]
    assert states == [
        (RunState.GENERATING, 1),
        (RunState.VERIFYING, 1),
        (RunState.GENERATING, 1),
        (RunState.GENERATING, 2),
        (RunState.VERIFYING, 2),
        (RunState.SUCCEEDED, 2),
    ]
    assert events[2].diagnostic_text == "bad"
    assert all(e.max_attempts == 3 for e in events)


def test_cancelled_run_raises_and_stops_generating():
    cancel = threading.Event()
    cancel.set()
    generator = ScriptedGenerator(["a"])
    with pytest.raises(RunAborted):
        RetryOrchestrator(generator, ScriptedVerifier([]), cancel_event=cancel).run("task", "proj")
    assert generator.calls == []


def test_rejects_zero_attempt_budget():
    with pytest.raises(ValueError):
        RetryOrchestrator(ScriptedGenerator([]), ScriptedVerifier([]), max_attempts=0)


@pytest.mark.parametrize("task,project", [("", "proj"), ("   ", "proj"), ("task", "bad name")])
def test_rejects_bad_input(task, project):
    with pytest.raises(ValueError):
        RetryOrchestrator(ScriptedGenerator([]), ScriptedVerifier([])).run(task, project)


@pytest.mark.parametrize("passes_on", [1, 2, 3, None])
def test_retry_count_invariant(passes_on):
    outcomes = [_pass() if i == passes_on else _fail(f"fail {i}") for i in (1, 2, 3)]
    report = RetryOrchestrator(ScriptedGenerator(["a", "b", "c"]), ScriptedVerifier(outcomes)).run("task", "proj")

    run = report.test_run
    assert run.retry_count == run.total_attempts - 1
    assert 1 <= run.total_attempts <= 3
    assert run.success == (passes_on is not None)
    if run.success:
        assert run.final_diagnostic is None


def test_cancel_while_generation_request_is_in_flight():
    cancel = threading.Event()
    stalled = FakeOpenAI([])

    def hang(**kwargs):
        stalled.requests.append(kwargs)
        cancel.wait(10)
        return completion(VALID_BLUEPRINT)

    stalled.chat.completions.create = hang
    threading.Timer(0.3, cancel.set).start()
    verifier = ScriptedVerifier([])

    started = time.monotonic()
    with pytest.raises(RunAborted):
        RetryOrchestrator(
            GenerationClient(client=stalled, poll_interval=0.05), verifier, cancel_event=cancel
        ).run("task", "proj")

    assert time.monotonic() - started < 3
    assert len(stalled.requests) == 1
    assert verifier.calls == 0
