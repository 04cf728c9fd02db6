import pytest

from conftest import outcome
from coderunner.core.models import ExecutionPhase, Limits, TerminationReason
from coderunner.services.classify import classify, reason_for, terminal_phase_for, truncate

SMALL = Limits(cpu_time_ms=1000, wall_time_ms=1000, memory_bytes=1 << 20, max_output_bytes=5)


def test_truncate():
    assert truncate(b"abc", 5) == (b"abc", False)
    assert truncate(b"abcdef", 5) == (b"abcde", True)


def test_ok_run():
    r = classify(ExecutionPhase.COMPLETED, SMALL, outcome(0, b"Hi\n"))
    assert r.termination_reason is TerminationReason.OK
    assert r.exit_code == 0
    assert r.stdout == b"Hi\n"
    assert not r.stdout_truncated


def test_nonzero_exit_is_runtime_error_with_code():
    r = classify(ExecutionPhase.COMPLETED, SMALL, outcome(7))
    assert r.termination_reason is TerminationReason.RUNTIME_ERROR
    assert r.exit_code == 7


def test_streams_are_capped_with_flag():
    r = classify(ExecutionPhase.COMPLETED, SMALL, outcome(0, b"0123456789", b"ab"))
    assert r.stdout == b"01234"
    assert r.stdout_truncated
    assert r.stderr == b"ab"
    assert not r.stderr_truncated
    assert r.termination_reason is TerminationReason.OUTPUT_EXCEEDED


def test_timeout_has_no_exit_code():
    o = outcome(None, b"par", timed_out=True)
    phase = terminal_phase_for(o)
    assert phase is ExecutionPhase.TIMED_OUT
    r = classify(phase, SMALL, o)
    assert r.termination_reason is TerminationReason.TIMEOUT
    assert r.exit_code is None
    assert r.stdout == b"par"


def test_resource_condition_wins_over_exit_code():
    o = outcome(1, b"0123456789", output_exceeded=True, stdout_truncated=True)
    phase = terminal_phase_for(o)
    assert phase is ExecutionPhase.RESOURCE_EXCEEDED
    r = classify(phase, SMALL, o)
    assert r.termination_reason is TerminationReason.OUTPUT_EXCEEDED
    assert r.exit_code == 1


@pytest.mark.parametrize("report,reason,phase", [
    ({"memory_exceeded": True}, TerminationReason.MEMORY_EXCEEDED, ExecutionPhase.RESOURCE_EXCEEDED),
    ({"cpu_exceeded": True}, TerminationReason.TIMEOUT, ExecutionPhase.RESOURCE_EXCEEDED),
    ({"cancelled": True}, TerminationReason.CANCELLED, ExecutionPhase.TIMED_OUT),
    ({"timed_out": True, "memory_exceeded": True}, TerminationReason.TIMEOUT, ExecutionPhase.TIMED_OUT),
])
def test_breach_mapping(report, reason, phase):
    o = outcome(137, **report)
    assert terminal_phase_for(o) is phase
    assert reason_for(phase, o) is reason


def test_compile_failed_never_reports_exit_code():
    r = classify(ExecutionPhase.COMPILE_FAILED, SMALL, outcome(1), compile_diagnostics="x.py:1: error")
    assert r.termination_reason is TerminationReason.COMPILE_ERROR
    assert r.exit_code is None
    assert r.compile_diagnostics == "x.py:1: error"


def test_internal_error():
    r = classify(ExecutionPhase.RUNTIME_FAILED, SMALL, diagnostic="SandboxFault: boom")
    assert r.termination_reason is TerminationReason.INTERNAL_ERROR
    assert r.diagnostic == "SandboxFault: boom"
    assert r.stdout == b""


def test_non_terminal_phase_is_rejected():
    with pytest.raises(ValueError):
        classify(ExecutionPhase.RUNNING, SMALL, outcome(0))
