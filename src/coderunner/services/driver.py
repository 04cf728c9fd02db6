from __future__ import annotations

import time
from dataclasses import replace
from typing import Optional

import structlog

from ..core.errors import InvalidSubmission, PhaseTransitionError, SandboxError
from ..core.languages import LanguageCatalogue, LanguageProfile
from ..core.models import ExecutionPhase, Limits, ResultRecord, SubmissionBundle
from ..core.settings import Settings, load_settings
from ..core.utils import elapsed_ms, normalize_relpath
from ..runtime.base import CancelToken, RunOutcome, RunRequest, SandboxHandle, SandboxRuntime
from .classify import classify, terminal_phase_for

log = structlog.get_logger(__name__)


def build_runtime(settings: Settings) -> SandboxRuntime:
    if settings.runtime == "docker":
        from ..runtime.docker import DockerRuntime
        return DockerRuntime(settings)
    from ..runtime.local import LocalProcessRuntime
    return LocalProcessRuntime(settings)


class _Tracker:
    """Forward-only phase bookkeeping for one submission."""

    def __init__(self, sandbox_id: str):
        self.phase = ExecutionPhase.PENDING
        self.sandbox_id = sandbox_id

    def move(self, to: ExecutionPhase) -> None:
        if not self.phase.can_move_to(to):
            raise PhaseTransitionError(f"{self.phase.value} -> {to.value} is not allowed")
        log.info("phase.enter", sandbox_id=self.sandbox_id, phase=to.value, previous=self.phase.value)
        self.phase = to


class ExecutionDriver:
    """
    Drives one SubmissionBundle through build-then-run inside a fresh sandbox
    and returns exactly one ResultRecord. Holds no per-submission state, so
    one instance serves any number of concurrent callers.
    """

    def __init__(
        self,
        runtime: Optional[SandboxRuntime] = None,
        catalogue: Optional[LanguageCatalogue] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or load_settings()
        self.runtime = runtime or build_runtime(self.settings)
        self.catalogue = catalogue or LanguageCatalogue.from_yaml(self.settings.languages_file)

    # ---------- validation ----------

    def validate(self, bundle: SubmissionBundle) -> LanguageProfile:
        if not bundle.source_files:
            raise InvalidSubmission("submission has no source files")
        seen = set()
        for f in bundle.source_files:
            rel = normalize_relpath(f.path)
            if rel is None or rel != f.path:
                raise InvalidSubmission(f"invalid source path {f.path!r}", {"path": f.path})
            if rel in seen:
                raise InvalidSubmission(f"duplicate source path {rel!r}", {"path": rel})
            seen.add(rel)
        profile = self.catalogue.get(bundle.language)
        profile.check_entry(bundle)
        return profile

    # ---------- execution ----------

    def execute(self, bundle: SubmissionBundle, cancel: Optional[CancelToken] = None) -> ResultRecord:
        profile = self.validate(bundle)
        start = time.monotonic()
        tracker = _Tracker(sandbox_id="-")

        try:
            with self.runtime.session() as handle:
                tracker.sandbox_id = handle.sandbox_id
                result = self._drive(handle, bundle, profile, tracker, cancel, start)
        except SandboxError as e:
            log.error("execution.internal_error", sandbox_id=tracker.sandbox_id,
                      phase=tracker.phase.value, error=e.message, context=e.context)
            if not tracker.phase.terminal:
                tracker.move(ExecutionPhase.RUNTIME_FAILED)
            result = classify(
                ExecutionPhase.RUNTIME_FAILED,
                bundle.limits,
                diagnostic=f"{type(e).__name__}: {e.message}",
                duration_ms=elapsed_ms(start),
            )

        log.info("execution.finished", sandbox_id=tracker.sandbox_id, language=bundle.language.value,
                 phase=result.phase.value, reason=result.termination_reason.value,
                 exit_code=result.exit_code, duration_ms=result.duration_ms)
        return result

    def _drive(
        self,
        handle: SandboxHandle,
        bundle: SubmissionBundle,
        profile: LanguageProfile,
        tracker: _Tracker,
        cancel: Optional[CancelToken],
        start: float,
    ) -> ResultRecord:
        limits = bundle.limits
        tracker.move(ExecutionPhase.COMPILING)
        for f in bundle.source_files:
            self.runtime.write_file(handle, f.path, f.content.encode("utf-8"))

        build = profile.build_argv(bundle, limits)
        if build is not None:
            outcome = self.runtime.run(handle, self._request(profile, build, limits,
                                                             self.settings.compile_wall_time_ms, None, cancel))
            diagnostics = self._diagnostics(outcome)
            phase = terminal_phase_for(outcome)
            if phase != ExecutionPhase.COMPLETED:
                # compiler output is diagnostics, not program output
                tracker.move(phase)
                return classify(phase, limits, replace(outcome, stdout=b"", stderr=b""),
                                compile_diagnostics=diagnostics, duration_ms=elapsed_ms(start))
            if outcome.exit_code != 0:
                tracker.move(ExecutionPhase.COMPILE_FAILED)
                return classify(ExecutionPhase.COMPILE_FAILED, limits, replace(outcome, stdout=b"", stderr=b""),
                                compile_diagnostics=diagnostics or f"build exited with {outcome.exit_code}",
                                duration_ms=elapsed_ms(start))

        tracker.move(ExecutionPhase.RUNNING)
        outcome = self.runtime.run(handle, self._request(profile, profile.run_argv(bundle, limits), limits,
                                                         limits.wall_time_ms, bundle.stdin, cancel))
        phase = terminal_phase_for(outcome)
        tracker.move(phase)
        return classify(phase, limits, outcome, duration_ms=elapsed_ms(start))

    @staticmethod
    def _request(profile: LanguageProfile, argv, limits: Limits, wall_time_ms: int,
                 stdin: Optional[bytes], cancel: Optional[CancelToken]) -> RunRequest:
        return RunRequest(
            argv=argv,
            limits=limits,
            wall_time_ms=wall_time_ms,
            stdin=stdin,
            cancel=cancel,
            address_space_limit=profile.limit_address_space,
            memory_signature=profile.memory_signature,
            image=profile.image,
        )

    @staticmethod
    def _diagnostics(outcome: RunOutcome) -> Optional[str]:
        # compilers report on stderr; some (javac -Xstdout, tsc) use stdout
        raw = outcome.stderr or outcome.stdout
        return raw.decode("utf-8", errors="replace") or None
