from __future__ import annotations
from typing import Optional, Tuple

from ..core.models import ExecutionPhase, Limits, ResultRecord, TerminationReason
from ..runtime.base import RunOutcome


def truncate(data: bytes, limit: int) -> Tuple[bytes, bool]:
    if len(data) <= limit:
        return data, False
    return data[:limit], True


def reason_for(phase: ExecutionPhase, outcome: Optional[RunOutcome]) -> TerminationReason:
    """
    Resource and timeout conditions outrank the exit status: they are the
    reason output is incomplete.
    """
    if phase == ExecutionPhase.COMPILE_FAILED:
        return TerminationReason.COMPILE_ERROR
    if phase == ExecutionPhase.RUNTIME_FAILED:
        return TerminationReason.INTERNAL_ERROR
    if outcome is not None:
        r = outcome.report
        if r.cancelled:
            return TerminationReason.CANCELLED
        if r.timed_out or r.cpu_exceeded:
            return TerminationReason.TIMEOUT
        if r.memory_exceeded:
            return TerminationReason.MEMORY_EXCEEDED
        if r.output_exceeded or outcome.stdout_truncated or outcome.stderr_truncated:
            return TerminationReason.OUTPUT_EXCEEDED
        if outcome.exit_code not in (None, 0):
            return TerminationReason.RUNTIME_ERROR
    if phase == ExecutionPhase.TIMED_OUT:
        return TerminationReason.TIMEOUT
    return TerminationReason.OK


def terminal_phase_for(outcome: RunOutcome) -> ExecutionPhase:
    """Phase a run ends in, judged from what the runtime reported."""
    r = outcome.report
    if r.timed_out or r.cancelled:
        return ExecutionPhase.TIMED_OUT
    if r.breached:
        return ExecutionPhase.RESOURCE_EXCEEDED
    return ExecutionPhase.COMPLETED


def classify(
    phase: ExecutionPhase,
    limits: Limits,
    outcome: Optional[RunOutcome] = None,
    *,
    compile_diagnostics: Optional[str] = None,
    diagnostic: Optional[str] = None,
    duration_ms: int = 0,
) -> ResultRecord:
    if not phase.terminal:
        raise ValueError(f"cannot classify non-terminal phase {phase.value}")

    stdout, out_cut = truncate(outcome.stdout if outcome else b"", limits.max_output_bytes)
    stderr, err_cut = truncate(outcome.stderr if outcome else b"", limits.max_output_bytes)
    if outcome is not None:
        out_cut = out_cut or outcome.stdout_truncated
        err_cut = err_cut or outcome.stderr_truncated

    exit_code = None
    if outcome is not None and phase != ExecutionPhase.COMPILE_FAILED:
        r = outcome.report
        if not (r.timed_out or r.cancelled):
            exit_code = outcome.exit_code

    return ResultRecord(
        phase=phase,
        termination_reason=reason_for(phase, outcome),
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        stdout_truncated=out_cut,
        stderr_truncated=err_cut,
        compile_diagnostics=compile_diagnostics,
        duration_ms=duration_ms,
        diagnostic=diagnostic,
        memory_peak_bytes=outcome.report.memory_peak_bytes if outcome else None,
    )
