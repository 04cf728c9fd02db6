from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Dict, Optional

import structlog

from ..core.errors import ConfigError, SandboxCreationError, SandboxFault, WriteError
from ..core.settings import Settings
from ..core.utils import new_sandbox_id, normalize_relpath
from . import cgroups, namespaces
from .base import ResourceReport, RunOutcome, RunRequest, SandboxHandle, SandboxRuntime
from .process import kill_process_group, supervise
from .rlimits import make_preexec

log = structlog.get_logger(__name__)


class LocalProcessRuntime(SandboxRuntime):
    """
    Host-process sandbox. Each handle owns a private scratch directory under
    ``settings.scratch_root`` and every command runs there in its own session
    with rlimits. Optional layers: a per-run cgroup v2 leaf, an unprivileged
    uid/gid, and namespace confinement (see ``namespaces``).

    Without ``use_namespaces`` the program sees the host filesystem, so that
    mode is for development only; deployments use namespaces or the docker
    runtime.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._cg_base: Optional[Path] = None
        if settings.use_cgroup:
            self._cg_base = cgroups.get_base(settings.cgroup_base)
        if settings.use_namespaces and not namespaces.available():
            raise ConfigError("use_namespaces is on but unshare or user namespaces are unavailable")
        if not settings.use_namespaces:
            log.warning("local.unconfined", detail="programs can read and write the host filesystem")

    # ------------ lifecycle ------------

    def create(self) -> SandboxHandle:
        sid = new_sandbox_id()
        try:
            root = Path(self.settings.scratch_root)
            root.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix=f"{sid}-", dir=root))
            (scratch / ".tmp").mkdir()
            if self.settings.run_as_uid is not None:
                gid = self.settings.run_as_gid if self.settings.run_as_gid is not None else -1
                for p in (scratch, scratch / ".tmp"):
                    os.chown(p, self.settings.run_as_uid, gid)
        except OSError as e:
            raise SandboxCreationError(f"cannot create scratch region: {e}") from e
        log.info("sandbox.created", sandbox_id=sid, runtime="local")
        return SandboxHandle(sandbox_id=sid, scratch=scratch.resolve())

    def write_file(self, handle: SandboxHandle, path: str, data: bytes) -> None:
        if handle.destroyed:
            raise WriteError("sandbox already destroyed", {"sandbox_id": handle.sandbox_id})
        rel = normalize_relpath(path)
        if rel is None:
            raise WriteError(f"path {path!r} escapes the scratch region", {"sandbox_id": handle.sandbox_id})
        target = handle.scratch / rel
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if not target.parent.resolve().is_relative_to(handle.scratch):
                raise WriteError(f"path {path!r} escapes the scratch region")
            target.write_bytes(data)
            if self.settings.run_as_uid is not None:
                os.chown(target, self.settings.run_as_uid, -1)
        except OSError as e:
            raise WriteError(f"cannot write {rel}: {e}", {"sandbox_id": handle.sandbox_id}) from e

    def destroy(self, handle: SandboxHandle) -> None:
        if handle.destroyed:
            return
        handle.destroyed = True

        try:
            shutil.rmtree(handle.scratch)
        except OSError as e:
            log.warning("sandbox.destroy_failed", sandbox_id=handle.sandbox_id, error=str(e))
            return
        log.info("sandbox.destroyed", sandbox_id=handle.sandbox_id)

    # ------------ run ------------

    def _env(self, handle: SandboxHandle) -> Dict[str, str]:
        if self.settings.use_namespaces:
            # the scratch path is masked inside; the program only has its cwd
            home = tmp = "/tmp"
        else:
            home, tmp = str(handle.scratch), str(handle.scratch / ".tmp")
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": home,
            "TMPDIR": tmp,
            "LANG": "C.UTF-8",
            "PYTHONDONTWRITEBYTECODE": "1",
        }

    def _enter(self, leaf: Optional[Path]) -> Optional[Callable[[], None]]:
        """
        Child-side hook: join the cgroup leaf, then drop to the configured
        uid/gid. Joining needs the service's own credentials on
        ``cgroup.procs``, so it has to come before the drop.
        """
        uid, gid = self.settings.run_as_uid, self.settings.run_as_gid
        if leaf is None and uid is None:
            return None

        def _hook() -> None:
            if leaf is not None:
                cgroups.attach(leaf, os.getpid())
            if gid is not None:
                os.setgroups([])
                os.setgid(gid)
            if uid is not None:
                os.setuid(uid)

        return _hook

    def run(self, handle: SandboxHandle, request: RunRequest) -> RunOutcome:
        if handle.destroyed:
            raise SandboxFault("sandbox already destroyed", {"sandbox_id": handle.sandbox_id})
        handle.phase_counter += 1

        argv = list(request.argv)
        if self.settings.use_namespaces:
            argv = namespaces.confine(
                argv,
                workdir=str(handle.scratch),
                hidden=str(Path(self.settings.scratch_root).resolve()),
                allow_network=self.settings.allow_network,
            )

        leaf: Optional[Path] = None
        if self._cg_base is not None:
            leaf = cgroups.create_leaf(self._cg_base, f"{handle.sandbox_id}-{handle.phase_counter}")
            cgroups.set_limits(leaf, request.limits)

        def _kill(proc: subprocess.Popen) -> None:
            if leaf is not None:
                cgroups.kill_all(leaf)
            kill_process_group(proc)

        try:
            sup = supervise(
                argv,
                cwd=str(handle.scratch),
                env=self._env(handle),
                wall_time_ms=request.wall_time_ms,
                max_output_bytes=request.limits.max_output_bytes,
                stdin=request.stdin,
                cancel=request.cancel,
                preexec_fn=make_preexec(
                    request.limits,
                    address_space=request.address_space_limit,
                    extra=self._enter(leaf),
                ),
                kill=_kill,
                grace_ms=self.settings.kill_grace_ms,
            )
            metrics = cgroups.read_metrics(leaf) if leaf is not None else {}
        finally:
            if leaf is not None:
                cgroups.teardown(leaf)

        report = ResourceReport(
            timed_out=sup.timed_out,
            cancelled=sup.cancelled,
            output_exceeded=sup.output_exceeded,
            cpu_exceeded=sup.signal == signal.SIGXCPU,
            memory_peak_bytes=metrics.get("memory.peak"),
        )
        if metrics.get("memory.events.oom_kill", 0) > 0:
            report.memory_exceeded = True
        elif request.memory_signature is not None:
            report.memory_exceeded = request.memory_signature.matches(sup.stderr, sup.exit_code)

        return RunOutcome(
            exit_code=None if (sup.timed_out or sup.cancelled) else sup.exit_code,
            stdout=sup.stdout,
            stderr=sup.stderr,
            stdout_truncated=sup.stdout_truncated,
            stderr_truncated=sup.stderr_truncated,
            signal=sup.signal,
            duration_ms=sup.duration_ms,
            report=report,
        )
