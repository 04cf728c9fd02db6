"""
Child-process supervision shared by the runtimes.

Runs one command against an absolute wall-clock deadline with stdout and
stderr captured into bounded buffers. When the deadline passes, the cancel
token fires or output overflows, the whole process tree is killed through
the ``kill`` callback (process group by default, ``docker kill`` for
containers).
"""
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, Callable, Dict, List, Optional

import structlog

from ..core.errors import SandboxFault
from .base import CancelToken

log = structlog.get_logger(__name__)

_CHUNK = 64 * 1024
_POLL_S = 0.02


@dataclass
class Supervised:
    returncode: Optional[int]
    stdout: bytes
    stderr: bytes
    stdout_truncated: bool
    stderr_truncated: bool
    timed_out: bool
    cancelled: bool
    output_exceeded: bool
    duration_ms: int

    @property
    def signal(self) -> Optional[int]:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    @property
    def exit_code(self) -> Optional[int]:
        """Shell convention: death by signal N reads as 128 + N."""
        if self.returncode is None:
            return None
        if self.returncode < 0:
            return 128 - self.returncode
        return self.returncode


class _BoundedReader(threading.Thread):
    """Keeps the first ``limit`` bytes of a pipe, drains and drops the rest."""

    def __init__(self, pipe: IO[bytes], limit: int, overflow: threading.Event):
        super().__init__(daemon=True)
        self.pipe = pipe
        self.limit = limit
        self.overflow = overflow
        self.buf = bytearray()
        self.truncated = False

    def run(self) -> None:
        try:
            while True:
                chunk = self.pipe.read1(_CHUNK) if hasattr(self.pipe, "read1") else self.pipe.read(_CHUNK)
                if not chunk:
                    break
                room = self.limit - len(self.buf)
                if len(chunk) > room:
                    self.buf.extend(chunk[:max(room, 0)])
                    if not self.truncated:
                        self.truncated = True
                        self.overflow.set()
                else:
                    self.buf.extend(chunk)
        except (OSError, ValueError):
            # pipe closed under us by the kill path
            pass
        finally:
            try:
                self.pipe.close()
            except OSError:
                pass


def _feed_stdin(pipe: IO[bytes], data: bytes) -> None:
    try:
        pipe.write(data)
    except (BrokenPipeError, OSError, ValueError):
        # program exited or closed stdin without reading everything
        pass
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def supervise(
    argv: List[str],
    *,
    cwd: str,
    env: Dict[str, str],
    wall_time_ms: int,
    max_output_bytes: int,
    stdin: Optional[bytes] = None,
    cancel: Optional[CancelToken] = None,
    preexec_fn: Optional[Callable[[], None]] = None,
    kill: Callable[[subprocess.Popen], None] = kill_process_group,
    grace_ms: int = 2000,
    popen_kwargs: Optional[dict] = None,
) -> Supervised:
    start = time.monotonic()
    deadline = start + wall_time_ms / 1000.0
    grace = grace_ms / 1000.0

    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=env,
            preexec_fn=preexec_fn,
            **(popen_kwargs or {}),
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise SandboxFault(f"cannot start {argv[0]}: {e}", {"argv": argv}) from e

    overflow = threading.Event()
    out_r = _BoundedReader(proc.stdout, max_output_bytes, overflow)
    err_r = _BoundedReader(proc.stderr, max_output_bytes, overflow)
    out_r.start()
    err_r.start()
    feeder = None
    if stdin is not None:
        feeder = threading.Thread(target=_feed_stdin, args=(proc.stdin, stdin), daemon=True)
        feeder.start()

    timed_out = cancelled = output_exceeded = False
    while True:
        try:
            proc.wait(timeout=_POLL_S)
            break
        except subprocess.TimeoutExpired:
            pass
        if overflow.is_set():
            output_exceeded = True
        elif cancel is not None and cancel.cancelled:
            cancelled = True
        elif time.monotonic() >= deadline:
            timed_out = True
        else:
            continue
        log.info("process.killed", pid=proc.pid, timed_out=timed_out,
                 cancelled=cancelled, output_exceeded=output_exceeded)
        kill(proc)
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired as e:
            raise SandboxFault(f"process {proc.pid} survived SIGKILL", {"argv": argv}) from e
        break

    # leader is gone; reap anything it left behind in its group
    kill(proc)
    for t in (out_r, err_r):
        t.join(timeout=grace)
    if feeder is not None:
        feeder.join(timeout=grace)
    if overflow.is_set():
        output_exceeded = True

    return Supervised(
        returncode=proc.returncode,
        stdout=bytes(out_r.buf),
        stderr=bytes(err_r.buf),
        stdout_truncated=out_r.truncated,
        stderr_truncated=err_r.truncated,
        timed_out=timed_out,
        cancelled=cancelled,
        output_exceeded=output_exceeded,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
