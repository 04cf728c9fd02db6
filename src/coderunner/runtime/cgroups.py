from __future__ import annotations
from pathlib import Path
from typing import Dict, Optional
import os, time

import structlog

from ..core.errors import SandboxCreationError, SandboxFault
from ..core.models import Limits

log = structlog.get_logger(__name__)

CGROOT = Path("/sys/fs/cgroup")


def _write_then_check(p: Path, val: str | int):
    val = str(val)
    p.write_text(val)
    back = p.read_text().strip()
    if back != val:
        raise SandboxCreationError(f"cgroup write {p}={val!r} read back {back!r}")


def ensure_v2():
    if not (CGROOT / "cgroup.controllers").exists():
        raise SandboxCreationError("cgroup v2 is required when use_cgroup is on")


def _self_cgroup_base() -> Path:
    # unified v2: '0::/<relative>'
    rel = ""
    with open("/proc/self/cgroup") as f:
        for line in f:
            if line.startswith("0::/"):
                rel = line.split("::", 1)[1].strip()
                break
    return (CGROOT / rel.lstrip("/")).resolve()


def get_base(configured: Optional[Path]) -> Path:
    """Configured base (must sit under /sys/fs/cgroup) or ``<own cgroup>/coderunner``."""
    if configured:
        base = Path(configured)
        if not str(base).startswith(str(CGROOT)):
            raise SandboxCreationError(f"cgroup_base must start with {CGROOT}, got {base}")
        return base
    return _self_cgroup_base() / "coderunner"


def _enable_controllers(node: Path):
    """Enable memory/pids/cpu for children of ``node``; cgroup v2 needs it empty of PIDs."""
    have = set((node / "cgroup.controllers").read_text().split())
    want = [f"+{c}" for c in ("memory", "pids", "cpu") if c in have]
    if not want:
        return
    current = set((node / "cgroup.subtree_control").read_text().split())
    if all(w[1:] in current for w in want):
        return
    if (node / "cgroup.procs").read_text().strip():
        raise SandboxCreationError(f"{node} has PIDs; cannot set subtree_control")
    (node / "cgroup.subtree_control").write_text(" ".join(want))


def create_leaf(base: Path, name: str) -> Path:
    ensure_v2()
    try:
        base.mkdir(parents=True, exist_ok=True)
        _enable_controllers(base)
        leaf = base / name
        leaf.mkdir()
    except OSError as e:
        raise SandboxCreationError(f"cannot create cgroup under {base}: {e}") from e
    return leaf


def set_limits(leaf: Path, limits: Limits):
    try:
        _write_then_check(leaf / "memory.max", limits.memory_bytes)
        try:
            _write_then_check(leaf / "memory.swap.max", 0)
        except FileNotFoundError:
            # swap accounting disabled on this host
            pass
        _write_then_check(leaf / "memory.oom.group", 1)
        _write_then_check(leaf / "pids.max", limits.max_processes)
    except OSError as e:
        raise SandboxCreationError(f"cannot set limits on {leaf}: {e}") from e


def attach(leaf: Path, pid: int) -> None:
    """Move ``pid`` into ``leaf``. Must run before the caller drops privileges."""
    try:
        (leaf / "cgroup.procs").write_text(str(pid))
    except OSError as e:
        raise SandboxFault(f"cannot attach {pid} to {leaf}: {e}", {"leaf": str(leaf)}) from e


def read_metrics(leaf: Path) -> Dict[str, int]:
    out: Dict[str, int] = {}
    events = leaf / "memory.events"
    if events.exists():
        for line in events.read_text().splitlines():
            key, _, val = line.partition(" ")
            if key in ("oom", "oom_kill", "max"):
                out[f"memory.events.{key}"] = int(val)
    for name in ("memory.peak", "pids.current"):
        p = leaf / name
        if p.exists():
            out[name] = int(p.read_text().strip())
    return out


def kill_all(leaf: Path) -> None:
    kill_file = leaf / "cgroup.kill"
    if kill_file.exists():
        try:
            kill_file.write_text("1")
        except OSError as e:
            log.warning("cgroup.kill_failed", leaf=str(leaf), error=str(e))


def teardown(leaf: Path):
    # leaf must be empty; best-effort retry while the killed tree exits
    kill_all(leaf)
    for _ in range(20):
        try:
            leaf.rmdir()
            return
        except FileNotFoundError:
            return
        except OSError:
            time.sleep(0.05)
    log.warning("cgroup.teardown_failed", leaf=str(leaf), pid=os.getpid())
