from __future__ import annotations

import sys
from dataclasses import replace
from typing import Callable, List, Optional, Union

import pytest

from coderunner.core.errors import SandboxCreationError
from coderunner.core.languages import BUILTIN_PROFILES, LanguageCatalogue
from coderunner.core.models import Language, Limits, SourceFile, SubmissionBundle
from coderunner.core.settings import Settings
from coderunner.runtime.base import ResourceReport, RunOutcome, RunRequest, SandboxHandle, SandboxRuntime
from coderunner.runtime.local import LocalProcessRuntime
from coderunner.services.driver import ExecutionDriver


@pytest.fixture
def limits() -> Limits:
    return Limits(cpu_time_ms=5_000, wall_time_ms=5_000, memory_bytes=512 * 1024 * 1024,
                  max_output_bytes=64 * 1024)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(scratch_root=tmp_path / "scratch", languages_file=None,
                    compile_wall_time_ms=20_000, kill_grace_ms=2_000)


@pytest.fixture
def catalogue() -> LanguageCatalogue:
    """Built-ins, with python pointed at the interpreter running the tests."""
    profiles = dict(BUILTIN_PROFILES)
    profiles[Language.PYTHON] = replace(
        profiles[Language.PYTHON],
        build=(sys.executable, "-m", "py_compile", "{entry}"),
        run=(sys.executable, "{entry}"),
    )
    return LanguageCatalogue(profiles)


@pytest.fixture
def local_driver(settings, catalogue) -> ExecutionDriver:
    return ExecutionDriver(runtime=LocalProcessRuntime(settings), catalogue=catalogue, settings=settings)


@pytest.fixture
def make_bundle(limits) -> Callable[..., SubmissionBundle]:
    def _make(code: str, *, language: Language = Language.PYTHON, entry: Optional[str] = None,
              stdin: Optional[bytes] = None, limits_: Optional[Limits] = None, extra_files=()):
        entry = entry or BUILTIN_PROFILES[language].default_entry
        files = (SourceFile(entry, code),) + tuple(extra_files)
        return SubmissionBundle(language=language, source_files=files, entry_point=entry,
                                stdin=stdin, limits=limits_ or limits)
    return _make


class FakeRuntime(SandboxRuntime):
    """
    Scripted runtime: ``outcomes`` are returned (or raised) by successive
    run() calls. Records everything it was asked to do.
    """

    def __init__(self, outcomes: List[Union[RunOutcome, Exception]] = (), *,
                 fail_create: bool = False, fail_write: Optional[Exception] = None):
        self.outcomes = list(outcomes)
        self.fail_create = fail_create
        self.fail_write = fail_write
        self.created: List[SandboxHandle] = []
        self.destroyed: List[str] = []
        self.files = {}
        self.requests: List[RunRequest] = []

    def create(self) -> SandboxHandle:
        if self.fail_create:
            raise SandboxCreationError("no capacity")
        h = SandboxHandle(sandbox_id=f"fake-{len(self.created)}", scratch=None)
        self.created.append(h)
        return h

    def write_file(self, handle, path, data):
        if self.fail_write is not None:
            raise self.fail_write
        self.files[(handle.sandbox_id, path)] = data

    def run(self, handle, request):
        self.requests.append(request)
        nxt = self.outcomes.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def destroy(self, handle):
        if not handle.destroyed:
            handle.destroyed = True
            self.destroyed.append(handle.sandbox_id)


def outcome(exit_code: Optional[int] = 0, stdout: bytes = b"", stderr: bytes = b"", **report) -> RunOutcome:
    return RunOutcome(exit_code=exit_code, stdout=stdout, stderr=stderr,
                      stdout_truncated=report.pop("stdout_truncated", False),
                      stderr_truncated=report.pop("stderr_truncated", False),
                      report=ResourceReport(**report))


@pytest.fixture
def fake_driver_factory(settings, catalogue):
    def _make(*outcomes, **kw) -> ExecutionDriver:
        return ExecutionDriver(runtime=FakeRuntime(list(outcomes), **kw), catalogue=catalogue, settings=settings)
    return _make
