from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

import structlog

from ..core.models import ResultRecord, SubmissionBundle, TerminationReason
from ..runtime.base import CancelToken
from .driver import ExecutionDriver

log = structlog.get_logger(__name__)


class Verdict(str, Enum):
    ACCEPTED = "accepted"
    WRONG_ANSWER = "wrong_answer"
    TIME_LIMIT_EXCEEDED = "time_limit_exceeded"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    OUTPUT_LIMIT_EXCEEDED = "output_limit_exceeded"
    RUNTIME_ERROR = "runtime_error"
    COMPILATION_ERROR = "compilation_error"
    INTERNAL_ERROR = "internal_error"


class CaseStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


_BY_REASON: Dict[TerminationReason, Verdict] = {
    TerminationReason.COMPILE_ERROR: Verdict.COMPILATION_ERROR,
    TerminationReason.RUNTIME_ERROR: Verdict.RUNTIME_ERROR,
    TerminationReason.TIMEOUT: Verdict.TIME_LIMIT_EXCEEDED,
    TerminationReason.CANCELLED: Verdict.TIME_LIMIT_EXCEEDED,
    TerminationReason.MEMORY_EXCEEDED: Verdict.MEMORY_LIMIT_EXCEEDED,
    TerminationReason.OUTPUT_EXCEEDED: Verdict.OUTPUT_LIMIT_EXCEEDED,
    TerminationReason.INTERNAL_ERROR: Verdict.INTERNAL_ERROR,
}


@dataclass(frozen=True)
class TestCase:
    input: str
    expected_output: str

    __test__ = False  # not a pytest class


@dataclass
class CaseReport:
    index: int
    status: CaseStatus
    verdict: Verdict
    duration_ms: int
    result: ResultRecord

    def to_dict(self) -> Dict:
        return {
            "index": self.index,
            "status": self.status.value,
            "verdict": self.verdict.value,
            "duration_ms": self.duration_ms,
            "result": self.result.to_dict(),
        }


@dataclass
class JudgeReport:
    verdict: Verdict
    passed: int
    total: int
    cases: List[CaseReport] = field(default_factory=list)
    compile_diagnostics: Optional[str] = None

    @property
    def score(self) -> int:
        return self.passed * 100 // self.total if self.total else 0

    def to_dict(self) -> Dict:
        return {
            "verdict": self.verdict.value,
            "score": self.score,
            "passed": self.passed,
            "total": self.total,
            "compile_diagnostics": self.compile_diagnostics,
            "cases": [c.to_dict() for c in self.cases],
        }


def normalize_output(text: str) -> str:
    """Ignore trailing whitespace on each line and trailing blank lines."""
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def outputs_match(actual: bytes, expected: str) -> bool:
    return normalize_output(actual.decode("utf-8", errors="replace")) == normalize_output(expected)


class Judge:
    """Runs a submission against test cases, one fresh sandbox per case."""

    def __init__(self, driver: ExecutionDriver):
        self.driver = driver

    def judge(self, bundle: SubmissionBundle, cases: Sequence[TestCase],
              cancel: Optional[CancelToken] = None) -> JudgeReport:
        reports: List[CaseReport] = []
        verdict = Verdict.ACCEPTED
        diagnostics = None

        for i, case in enumerate(cases):
            result = self.driver.execute(bundle.with_stdin(case.input.encode("utf-8")), cancel=cancel)
            if result.termination_reason == TerminationReason.OK:
                passed = outputs_match(result.stdout, case.expected_output)
                status = CaseStatus.PASSED if passed else CaseStatus.FAILED
                case_verdict = Verdict.ACCEPTED if passed else Verdict.WRONG_ANSWER
            else:
                status = CaseStatus.ERROR
                case_verdict = _BY_REASON[result.termination_reason]
            reports.append(CaseReport(i, status, case_verdict, result.duration_ms, result))

            if verdict == Verdict.ACCEPTED and case_verdict != Verdict.ACCEPTED:
                verdict = case_verdict
            if case_verdict == Verdict.COMPILATION_ERROR:
                # same source, same compiler: the remaining cases cannot differ
                diagnostics = result.compile_diagnostics
                break
            if cancel is not None and cancel.cancelled:
                break

        passed = sum(1 for r in reports if r.status == CaseStatus.PASSED)
        log.info("judge.finished", language=bundle.language.value, verdict=verdict.value,
                 passed=passed, total=len(cases))
        return JudgeReport(verdict=verdict, passed=passed, total=len(cases),
                           cases=reports, compile_diagnostics=diagnostics)
