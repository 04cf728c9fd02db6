"""
Filesystem and process confinement for the local runtime, built on ``unshare``.

The command runs in fresh user, mount and pid namespaces (plus a network
namespace unless networking is allowed). A short shell prologue binds the
scratch region onto itself and makes it the working directory. Every other
mount is then remounted read-only, and private tmpfs instances are laid over
/tmp, /var/tmp, /dev/shm and the scratch root. The program keeps its working
directory through the shadowing mounts, so the only writable places it can
reach are its own scratch region and a throw-away /tmp.
"""
from __future__ import annotations

import shutil
import subprocess
import tempfile
from functools import lru_cache
from typing import List

_PROLOGUE = r"""
set -e
work="$1"; hide="$2"; shift 2
mount --bind "$work" "$work"
cd "$work"
while read -r _ m _ o _; do
  [ "$m" = "$work" ] && continue
  f=remount,bind,ro
  for x in nosuid nodev noexec relatime noatime nodiratime; do
    case ",$o," in *",$x,"*) f="$f,$x" ;; esac
  done
  mount -o "$f" "$m" 2>/dev/null || true
done < /proc/self/mounts
for d in /tmp /var/tmp /dev/shm "$hide"; do
  if [ -d "$d" ]; then mount -t tmpfs -o size=64m,mode=1777,nosuid,nodev tmpfs "$d"; fi
done
exec "$@"
"""


def confine(cmd: List[str], *, workdir: str, hidden: str, allow_network: bool) -> List[str]:
    """
    Wrap ``cmd`` so it runs confined to ``workdir``. ``hidden`` (the scratch
    root) is masked so sibling sandboxes are invisible. Paths in ``cmd`` must
    be relative to ``workdir`` or live on the read-only host tree.
    """
    unshare = shutil.which("unshare") or "unshare"
    flags = ["--user", "--map-root-user", "--mount", "--pid", "--fork", "--kill-child", "--mount-proc"]
    if not allow_network:
        flags.append("--net")
    return [unshare, *flags, "--", "/bin/sh", "-c", _PROLOGUE, "coderunner-confine", workdir, hidden, *cmd]


@lru_cache(maxsize=1)
def available() -> bool:
    """Whether confinement actually works on this host (user namespaces may be disabled)."""
    if not shutil.which("unshare"):
        return False
    with tempfile.TemporaryDirectory(prefix="coderunner-ns-") as d:
        try:
            res = subprocess.run(
                confine(["true"], workdir=d, hidden=d, allow_network=False),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.SubprocessError):
            return False
    return res.returncode == 0
