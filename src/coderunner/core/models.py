from __future__ import annotations
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


class Language(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    JAVA = "java"
    CPP = "cpp"
    C = "c"


class ExecutionPhase(str, Enum):
    PENDING = "pending"
    COMPILING = "compiling"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPILE_FAILED = "compile_failed"
    RUNTIME_FAILED = "runtime_failed"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self]

    def can_move_to(self, other: "ExecutionPhase") -> bool:
        return other in _TRANSITIONS[self]


_ABSORBING: FrozenSet[ExecutionPhase] = frozenset({
    ExecutionPhase.RUNTIME_FAILED,
    ExecutionPhase.TIMED_OUT,
    ExecutionPhase.RESOURCE_EXCEEDED,
})

# strictly forward; every non-terminal phase may fall into an absorbing failure
_TRANSITIONS: Dict[ExecutionPhase, FrozenSet[ExecutionPhase]] = {
    ExecutionPhase.PENDING: frozenset({ExecutionPhase.COMPILING}) | _ABSORBING,
    ExecutionPhase.COMPILING: frozenset({ExecutionPhase.RUNNING, ExecutionPhase.COMPILE_FAILED}) | _ABSORBING,
    ExecutionPhase.RUNNING: frozenset({ExecutionPhase.COMPLETED}) | _ABSORBING,
    ExecutionPhase.COMPLETED: frozenset(),
    ExecutionPhase.COMPILE_FAILED: frozenset(),
    ExecutionPhase.RUNTIME_FAILED: frozenset(),
    ExecutionPhase.TIMED_OUT: frozenset(),
    ExecutionPhase.RESOURCE_EXCEEDED: frozenset(),
}


class TerminationReason(str, Enum):
    OK = "ok"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    MEMORY_EXCEEDED = "memory_exceeded"
    OUTPUT_EXCEEDED = "output_exceeded"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Limits:
    cpu_time_ms: int
    wall_time_ms: int
    memory_bytes: int
    max_output_bytes: int
    max_open_files: int = 64
    max_processes: int = 64

    def __post_init__(self):
        for name in ("cpu_time_ms", "wall_time_ms", "memory_bytes",
                     "max_output_bytes", "max_open_files", "max_processes"):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be positive")

    @property
    def memory_mb(self) -> int:
        return max(1, self.memory_bytes // (1024 * 1024))

    def clamp(self, ceiling: "Limits") -> "Limits":
        """Cap every field at the matching field of ``ceiling``."""
        return Limits(
            cpu_time_ms=min(self.cpu_time_ms, ceiling.cpu_time_ms),
            wall_time_ms=min(self.wall_time_ms, ceiling.wall_time_ms),
            memory_bytes=min(self.memory_bytes, ceiling.memory_bytes),
            max_output_bytes=min(self.max_output_bytes, ceiling.max_output_bytes),
            max_open_files=min(self.max_open_files, ceiling.max_open_files),
            max_processes=min(self.max_processes, ceiling.max_processes),
        )


@dataclass(frozen=True)
class SourceFile:
    path: str       # relative POSIX path inside the scratch region
    content: str


@dataclass(frozen=True)
class SubmissionBundle:
    language: Language
    source_files: Tuple[SourceFile, ...]
    limits: Limits
    entry_point: Optional[str] = None  # default: first source file
    stdin: Optional[bytes] = None

    def __post_init__(self):
        # frozen: normalize through object.__setattr__
        object.__setattr__(self, "language", Language(self.language))
        object.__setattr__(self, "source_files", tuple(self.source_files))
        if isinstance(self.stdin, str):
            object.__setattr__(self, "stdin", self.stdin.encode("utf-8"))
        if self.entry_point is None and self.source_files:
            object.__setattr__(self, "entry_point", self.source_files[0].path)

    @property
    def entry_file(self) -> Optional[SourceFile]:
        for f in self.source_files:
            if f.path == self.entry_point:
                return f
        return None

    def with_stdin(self, stdin: Optional[bytes]) -> "SubmissionBundle":
        return replace(self, stdin=stdin)


@dataclass(frozen=True)
class ResultRecord:
    phase: ExecutionPhase
    termination_reason: TerminationReason
    exit_code: Optional[int] = None
    stdout: bytes = b""
    stderr: bytes = b""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    compile_diagnostics: Optional[str] = None
    duration_ms: int = 0
    diagnostic: Optional[str] = None
    memory_peak_bytes: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.termination_reason == TerminationReason.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "termination_reason": self.termination_reason.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout.decode("utf-8", errors="replace"),
            "stderr": self.stderr.decode("utf-8", errors="replace"),
            "stdout_truncated": self.stdout_truncated,
            "stderr_truncated": self.stderr_truncated,
            "compile_diagnostics": self.compile_diagnostics,
            "duration_ms": self.duration_ms,
            "diagnostic": self.diagnostic,
            "memory_peak_bytes": self.memory_peak_bytes,
        }
