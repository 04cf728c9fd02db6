from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional

from ..core.languages import MemorySignature
from ..core.models import Limits


class CancelToken:
    """Set by the caller to abort an in-flight submission."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


@dataclass
class SandboxHandle:
    sandbox_id: str
    scratch: Path
    destroyed: bool = False
    phase_counter: int = 0  # one child (or container) name per run() call
    image: Optional[str] = None  # last image run, container runtimes only


@dataclass
class RunRequest:
    argv: List[str]
    limits: Limits
    wall_time_ms: int
    stdin: Optional[bytes] = None
    cancel: Optional[CancelToken] = None
    address_space_limit: bool = True
    memory_signature: Optional[MemorySignature] = None
    image: Optional[str] = None  # container runtimes only


@dataclass
class ResourceReport:
    timed_out: bool = False
    cpu_exceeded: bool = False
    memory_exceeded: bool = False
    output_exceeded: bool = False
    cancelled: bool = False
    memory_peak_bytes: Optional[int] = None

    @property
    def breached(self) -> bool:
        return self.timed_out or self.cpu_exceeded or self.memory_exceeded or self.output_exceeded or self.cancelled


@dataclass
class RunOutcome:
    exit_code: Optional[int]
    stdout: bytes = b""
    stderr: bytes = b""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    signal: Optional[int] = None
    duration_ms: int = 0
    report: ResourceReport = field(default_factory=ResourceReport)


class SandboxRuntime:
    """
    Seam to whatever provides isolation. One handle per submission, never
    reused; ``destroy`` must be safe to call any number of times.
    """

    def create(self) -> SandboxHandle: ...
    def write_file(self, handle: SandboxHandle, path: str, data: bytes) -> None: ...
    def run(self, handle: SandboxHandle, request: RunRequest) -> RunOutcome: ...
    def destroy(self, handle: SandboxHandle) -> None: ...

    @contextmanager
    def session(self) -> Iterator[SandboxHandle]:
        handle = self.create()
        try:
            yield handle
        finally:
            self.destroy(handle)
