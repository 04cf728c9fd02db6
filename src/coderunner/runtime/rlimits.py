from __future__ import annotations
import math
import os
import resource
from typing import Callable, Optional

from ..core.models import Limits

# a program that fills the output cap still fits on disk
_FSIZE_HEADROOM = 64 * 1024 * 1024


def apply_rlimits(limits: Limits, *, address_space: bool = True) -> None:
    """
    Process-level caps: CPU seconds, address space, open files, file size.
    Soft CPU limit raises SIGXCPU one second before the hard SIGKILL.
    Limits the platform refuses are left at their defaults.
    """
    cpu_s = max(1, math.ceil(limits.cpu_time_ms / 1000))
    wanted = [
        (resource.RLIMIT_CPU, (cpu_s, cpu_s + 1)),
        (resource.RLIMIT_NOFILE, (limits.max_open_files, limits.max_open_files)),
        (resource.RLIMIT_FSIZE, (limits.max_output_bytes + _FSIZE_HEADROOM,) * 2),
        (resource.RLIMIT_CORE, (0, 0)),
    ]
    if address_space:
        wanted.append((resource.RLIMIT_AS, (limits.memory_bytes, limits.memory_bytes)))
    for which, value in wanted:
        try:
            resource.setrlimit(which, value)
        except (ValueError, OSError):
            pass


def make_preexec(limits: Limits, *, address_space: bool = True,
                 extra: Optional[Callable[[], None]] = None) -> Callable[[], None]:
    """Runs in the child between fork and exec: new session, then rlimits."""

    def _preexec() -> None:
        os.setsid()
        if extra is not None:
            extra()
        apply_rlimits(limits, address_space=address_space)

    return _preexec
