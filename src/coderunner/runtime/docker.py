"""
Container sandbox driven through the docker CLI.

One scratch directory per handle is bind-mounted at ``/code``; each phase
(build, run) gets its own throw-away container from the language image with
no network, a read-only root filesystem, no capabilities and an unprivileged
user. Forced termination goes through ``docker kill``, which takes the whole
process tree in the container with it.
"""
from __future__ import annotations

import math
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from ..core.errors import SandboxCreationError, SandboxFault, WriteError
from ..core.settings import Settings
from ..core.utils import new_sandbox_id, normalize_relpath
from .base import ResourceReport, RunOutcome, RunRequest, SandboxHandle, SandboxRuntime
from .process import kill_process_group, supervise

log = structlog.get_logger(__name__)

WORKDIR = "/code"
# docker run's own failure codes, as opposed to the contained program's
_DOCKER_ERRORS = (125, 126, 127)
_SIGXCPU_EXIT = 128 + 24


class DockerRuntime(SandboxRuntime):
    def __init__(self, settings: Settings):
        self.settings = settings
        self.docker = settings.docker_bin

    def _container_name(self, handle: SandboxHandle, n: int) -> str:
        return f"coderunner-{handle.sandbox_id}-{n}"

    def _docker(self, *args: str, timeout: float = 30) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            check=False,
        )

    # ------------ lifecycle ------------

    def create(self) -> SandboxHandle:
        if shutil.which(self.docker) is None:
            raise SandboxCreationError(f"{self.docker} not found on PATH")
        sid = new_sandbox_id()
        try:
            root = Path(self.settings.scratch_root)
            root.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix=f"{sid}-", dir=root))
            # container user is not the host user
            os.chmod(scratch, 0o777)
        except OSError as e:
            raise SandboxCreationError(f"cannot create scratch region: {e}") from e
        log.info("sandbox.created", sandbox_id=sid, runtime="docker")
        return SandboxHandle(sandbox_id=sid, scratch=scratch.resolve())

    def write_file(self, handle: SandboxHandle, path: str, data: bytes) -> None:
        if handle.destroyed:
            raise WriteError("sandbox already destroyed", {"sandbox_id": handle.sandbox_id})
        rel = normalize_relpath(path)
        if rel is None:
            raise WriteError(f"path {path!r} escapes the scratch region", {"sandbox_id": handle.sandbox_id})
        target = handle.scratch / rel
        try:
            for parent in reversed(target.relative_to(handle.scratch).parents):
                d = handle.scratch / parent
                if not d.exists():
                    d.mkdir()
                    os.chmod(d, 0o777)
            target.write_bytes(data)
            os.chmod(target, 0o644)
        except OSError as e:
            raise WriteError(f"cannot write {rel}: {e}", {"sandbox_id": handle.sandbox_id}) from e

    def destroy(self, handle: SandboxHandle) -> None:
        if handle.destroyed:
            return
        handle.destroyed = True
        names = [self._container_name(handle, n) for n in range(1, handle.phase_counter + 1)]
        if names:
            try:
                self._docker("rm", "-f", *names)
            except (OSError, subprocess.SubprocessError) as e:
                log.warning("sandbox.destroy_failed", sandbox_id=handle.sandbox_id, error=str(e))
        if self._remove_scratch(handle):
            log.info("sandbox.destroyed", sandbox_id=handle.sandbox_id)

    def wipe_args(self, handle: SandboxHandle) -> List[str]:
        """``docker`` arguments that empty the scratch region as the container user."""
        return [
            "run", "--rm",
            "--network", "none",
            "--cap-drop", "ALL",
            "--user", self.settings.docker_user,
            "--mount", f"type=bind,src={handle.scratch},dst={WORKDIR}",
            handle.image,
            "sh", "-c", f"rm -rf {WORKDIR}/..?* {WORKDIR}/.[!.]* {WORKDIR}/*",
        ]

    def _remove_scratch(self, handle: SandboxHandle) -> bool:
        try:
            shutil.rmtree(handle.scratch)
            return True
        except OSError as e:
            if handle.image is None:
                log.warning("sandbox.destroy_failed", sandbox_id=handle.sandbox_id, error=str(e))
                return False
        # directories made inside the container belong to the container user
        try:
            self._docker(*self.wipe_args(handle), timeout=60)
            shutil.rmtree(handle.scratch)
        except (OSError, subprocess.SubprocessError) as e:
            log.warning("sandbox.destroy_failed", sandbox_id=handle.sandbox_id, error=str(e))
            return False
        return True

    # ------------ run ------------

    def build_command(self, handle: SandboxHandle, name: str, request: RunRequest) -> List[str]:
        if not request.image:
            raise SandboxFault("no image configured for this language", {"sandbox_id": handle.sandbox_id})
        lim = request.limits
        cpu_s = max(1, math.ceil(lim.cpu_time_ms / 1000))
        cmd = [
            self.docker, "run",
            "--name", name,
            "--network", "none",
            "--read-only",
            "--tmpfs", "/tmp:rw,nosuid,nodev,size=64m",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--user", self.settings.docker_user,
            "--memory", f"{lim.memory_bytes}b",
            "--memory-swap", f"{lim.memory_bytes}b",
            "--pids-limit", str(lim.max_processes),
            "--ulimit", f"cpu={cpu_s}:{cpu_s + 1}",
            "--ulimit", f"nofile={lim.max_open_files}:{lim.max_open_files}",
            "--ulimit", "core=0:0",
            "--mount", f"type=bind,src={handle.scratch},dst={WORKDIR}",
            "--workdir", WORKDIR,
            "--env", f"HOME={WORKDIR}",
            "--env", "TMPDIR=/tmp",
            # bytecode caches would land in /code as directories the host cannot remove
            "--env", "PYTHONPYCACHEPREFIX=/tmp/pycache",
        ]
        if request.stdin is not None:
            cmd.append("--interactive")
        cmd.append(request.image)
        cmd.extend(request.argv)
        return cmd

    def _inspect(self, name: str) -> Tuple[bool, bool]:
        """(container exists, OOM killed)."""
        res = self._docker("inspect", "--format", "{{.State.OOMKilled}}", name)
        if res.returncode != 0:
            return False, False
        return True, res.stdout.strip() == "true"

    def run(self, handle: SandboxHandle, request: RunRequest) -> RunOutcome:
        if handle.destroyed:
            raise SandboxFault("sandbox already destroyed", {"sandbox_id": handle.sandbox_id})
        handle.phase_counter += 1
        name = self._container_name(handle, handle.phase_counter)
        argv = self.build_command(handle, name, request)
        handle.image = request.image

        def _kill(proc: subprocess.Popen) -> None:
            try:
                self._docker("kill", name, timeout=10)
            except (OSError, subprocess.SubprocessError) as e:
                log.warning("docker.kill_failed", container=name, error=str(e))
            kill_process_group(proc)

        try:
            sup = supervise(
                argv,
                cwd=str(handle.scratch),
                env=dict(os.environ),
                wall_time_ms=request.wall_time_ms,
                max_output_bytes=request.limits.max_output_bytes,
                stdin=request.stdin,
                cancel=request.cancel,
                kill=_kill,
                grace_ms=self.settings.kill_grace_ms + 10_000,
                popen_kwargs={"start_new_session": True},
            )
            exists, oom = self._inspect(name)
        except (OSError, subprocess.SubprocessError) as e:
            raise SandboxFault(f"docker cli failed: {e}", {"container": name}) from e
        finally:
            try:
                self._docker("rm", "-f", name)
            except (OSError, subprocess.SubprocessError) as e:
                log.warning("docker.rm_failed", container=name, error=str(e))

        killed = sup.timed_out or sup.cancelled
        never_started = not exists or (sup.returncode in _DOCKER_ERRORS and b"OCI runtime" in sup.stderr)
        if never_started and not killed:
            raise SandboxFault(
                "container did not start: " + sup.stderr.decode("utf-8", errors="replace")[-500:],
                {"container": name, "image": request.image},
            )

        report = ResourceReport(
            timed_out=sup.timed_out,
            cancelled=sup.cancelled,
            output_exceeded=sup.output_exceeded,
            cpu_exceeded=sup.returncode == _SIGXCPU_EXIT,
            memory_exceeded=oom,
        )
        if not oom and request.memory_signature is not None:
            report.memory_exceeded = request.memory_signature.matches(sup.stderr, sup.exit_code)

        code: Optional[int] = None if (sup.timed_out or sup.cancelled) else sup.exit_code
        return RunOutcome(
            exit_code=code,
            stdout=sup.stdout,
            stderr=sup.stderr,
            stdout_truncated=sup.stdout_truncated,
            stderr_truncated=sup.stderr_truncated,
            signal=(code - 128) if code is not None and code > 128 else None,
            duration_ms=sup.duration_ms,
            report=report,
        )
