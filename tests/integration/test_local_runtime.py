import os
import sys
import textwrap
import threading
import time
import uuid
from pathlib import Path

import pytest

from coderunner.core.errors import WriteError
from coderunner.core.models import ExecutionPhase, Limits, SourceFile, TerminationReason
from coderunner.runtime.base import CancelToken, RunRequest
from coderunner.runtime import cgroups, namespaces
from coderunner.runtime.local import LocalProcessRuntime
from coderunner.services.driver import ExecutionDriver

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not sys.platform.startswith("linux"), reason="needs linux process groups and rlimits"),
]


def test_hello(local_driver, make_bundle):
    r = local_driver.execute(make_bundle('print("Hello")'))
    assert r.phase is ExecutionPhase.COMPLETED
    assert r.termination_reason is TerminationReason.OK
    assert r.exit_code == 0
    assert r.stdout == b"Hello\n"
    assert r.stderr == b""


def test_exit_code_is_reported(local_driver, make_bundle):
    r = local_driver.execute(make_bundle("import sys\nsys.exit(7)"))
    assert r.termination_reason is TerminationReason.RUNTIME_ERROR
    assert r.exit_code == 7


def test_syntax_error_is_compile_error(local_driver, make_bundle):
    r = local_driver.execute(make_bundle("print((\n"))
    assert r.phase is ExecutionPhase.COMPILE_FAILED
    assert r.termination_reason is TerminationReason.COMPILE_ERROR
    assert r.exit_code is None
    assert "SyntaxError" in r.compile_diagnostics


def test_stdin_is_delivered(local_driver, make_bundle):
    code = "import sys\nprint(sum(int(x) for x in sys.stdin.read().split()))"
    r = local_driver.execute(make_bundle(code, stdin=b"1 2 3\n"))
    assert r.stdout == b"6\n"


def test_multiple_files(local_driver, make_bundle):
    r = local_driver.execute(make_bundle("from pkg.util import X\nprint(X)",
                                         extra_files=(SourceFile("pkg/util.py", "X = 41 + 1"),)))
    assert r.stdout == b"42\n"


def test_infinite_loop_times_out(local_driver, make_bundle):
    lim = Limits(cpu_time_ms=10_000, wall_time_ms=1_500, memory_bytes=512 << 20, max_output_bytes=4096)
    start = time.monotonic()
    r = local_driver.execute(make_bundle("print('start', flush=True)\nwhile True:\n    pass", limits_=lim))
    assert time.monotonic() - start < 15
    assert r.phase in (ExecutionPhase.TIMED_OUT, ExecutionPhase.RESOURCE_EXCEEDED)
    assert r.termination_reason is TerminationReason.TIMEOUT
    assert r.stdout == b"start\n"


def test_sleep_times_out_on_wall_clock(local_driver, make_bundle):
    lim = Limits(cpu_time_ms=5_000, wall_time_ms=1_000, memory_bytes=512 << 20, max_output_bytes=4096)
    r = local_driver.execute(make_bundle("import time\ntime.sleep(30)", limits_=lim))
    assert r.phase is ExecutionPhase.TIMED_OUT
    assert r.termination_reason is TerminationReason.TIMEOUT
    assert r.exit_code is None


def test_output_flood_is_capped(local_driver, make_bundle):
    lim = Limits(cpu_time_ms=5_000, wall_time_ms=10_000, memory_bytes=512 << 20, max_output_bytes=1000)
    r = local_driver.execute(make_bundle("while True:\n    print('x' * 100)", limits_=lim))
    assert r.phase is ExecutionPhase.RESOURCE_EXCEEDED
    assert r.termination_reason is TerminationReason.OUTPUT_EXCEEDED
    assert r.stdout_truncated
    assert len(r.stdout) == 1000


def test_memory_limit(local_driver, make_bundle):
    lim = Limits(cpu_time_ms=5_000, wall_time_ms=10_000, memory_bytes=128 << 20, max_output_bytes=4096)
    r = local_driver.execute(make_bundle("x = bytearray(1 << 30)\nprint(len(x))", limits_=lim))
    assert r.termination_reason is TerminationReason.MEMORY_EXCEEDED
    assert r.stdout == b""


def test_cancel(local_driver, make_bundle):
    token = CancelToken()
    timer = threading.Timer(1.0, token.cancel)
    timer.start()
    try:
        r = local_driver.execute(make_bundle("import time\ntime.sleep(30)"), cancel=token)
    finally:
        timer.cancel()
    assert r.phase is ExecutionPhase.TIMED_OUT
    assert r.termination_reason is TerminationReason.CANCELLED


def test_submissions_are_isolated(local_driver, make_bundle):
    writer = "open('left.txt', 'w').write('secret')\nprint('wrote')"
    reader = "import os\nprint(os.path.exists('left.txt'))"
    assert local_driver.execute(make_bundle(writer)).stdout == b"wrote\n"
    assert local_driver.execute(make_bundle(reader)).stdout == b"False\n"


def test_same_submission_same_result(local_driver, make_bundle):
    b = make_bundle("print(sorted([3, 1, 2]))")
    first, second = local_driver.execute(b), local_driver.execute(b)
    assert first.stdout == second.stdout == b"[1, 2, 3]\n"
    assert first.termination_reason is second.termination_reason


def test_background_child_does_not_outlive_run(local_driver, make_bundle):
    code = textwrap.dedent("""
        import subprocess, sys
        subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        print("parent done")
    """)
    start = time.monotonic()
    r = local_driver.execute(make_bundle(code))
    assert r.stdout == b"parent done\n"
    assert time.monotonic() - start < 15


def test_scratch_removed_after_execution(local_driver, make_bundle, settings):
    local_driver.execute(make_bundle("print(1)"))
    assert list(settings.scratch_root.iterdir()) == []


def test_destroy_is_idempotent_and_blocks_reuse(settings, limits):
    rt = LocalProcessRuntime(settings)
    h = rt.create()
    rt.write_file(h, "a/b.txt", b"data")
    assert (h.scratch / "a" / "b.txt").read_bytes() == b"data"
    rt.destroy(h)
    rt.destroy(h)
    assert not h.scratch.exists()
    with pytest.raises(WriteError):
        rt.write_file(h, "c.txt", b"")


def test_write_rejects_escaping_paths(settings):
    rt = LocalProcessRuntime(settings)
    with rt.session() as h:
        for bad in ("../x", "/etc/x", "a/../../x"):
            with pytest.raises(WriteError):
                rt.write_file(h, bad, b"")


def test_runtime_reports_signal_exit(settings, limits):
    rt = LocalProcessRuntime(settings)
    with rt.session() as h:
        out = rt.run(h, RunRequest(argv=[sys.executable, "-c", "import os; os.kill(os.getpid(), 9)"],
                                   limits=limits, wall_time_ms=5_000))
    assert out.exit_code == 128 + 9
    assert out.signal == 9


def test_printed_memory_error_is_still_a_runtime_error(local_driver, make_bundle):
    r = local_driver.execute(make_bundle("import sys\nsys.stderr.write('MemoryError\\n')\nsys.exit(3)"))
    assert r.phase is ExecutionPhase.COMPLETED
    assert r.termination_reason is TerminationReason.RUNTIME_ERROR
    assert r.exit_code == 3

    r = local_driver.execute(make_bundle("import sys\nprint('MemoryError', file=sys.stderr)\nsys.exit(1)"))
    assert r.termination_reason is TerminationReason.RUNTIME_ERROR


@pytest.fixture
def confined_driver(settings, catalogue):
    namespaces.available.cache_clear()
    if not namespaces.available():
        pytest.skip("unprivileged user namespaces are unavailable")
    confined = settings.model_copy(update={"use_namespaces": True})
    return ExecutionDriver(runtime=LocalProcessRuntime(confined), catalogue=catalogue, settings=confined)


def test_absolute_paths_do_not_leak_between_submissions(confined_driver, make_bundle):
    p = f"/tmp/leak_{uuid.uuid4().hex}"
    writer = f"open({p!r}, 'w').write('secret from A')\nprint('wrote')"
    reader = f"import os\nprint(os.path.exists({p!r}))"
    a = confined_driver.execute(make_bundle(writer))
    assert a.termination_reason is TerminationReason.OK
    assert a.stdout == b"wrote\n"
    b = confined_driver.execute(make_bundle(reader))
    assert b.stdout == b"False\n"
    assert not Path(p).exists()


def test_host_tree_is_read_only_when_confined(confined_driver, make_bundle):
    target = Path(__file__).resolve().parent / f"leak_{uuid.uuid4().hex}"
    code = textwrap.dedent(f"""
        try:
            open({str(target)!r}, "w").write("x")
            print("written")
        except OSError:
            print("blocked")
        open("inside.txt", "w").write("ok")
        print(open("inside.txt").read())
    """)
    r = confined_driver.execute(make_bundle(code))
    assert r.stdout == b"blocked\nok\n"
    assert not target.exists()


def test_cgroup_join_happens_before_privilege_drop(settings, limits, tmp_path, monkeypatch):
    leaves = []
    torn_down = []

    def _create_leaf(base, name):
        leaf = base / name
        leaf.mkdir(parents=True)
        leaves.append(leaf)
        return leaf

    monkeypatch.setattr(cgroups, "get_base", lambda configured: tmp_path / "cg")
    monkeypatch.setattr(cgroups, "create_leaf", _create_leaf)
    monkeypatch.setattr(cgroups, "set_limits", lambda leaf, lim: None)
    monkeypatch.setattr(cgroups, "teardown", torn_down.append)

    rt = LocalProcessRuntime(settings.model_copy(update={"use_cgroup": True, "run_as_uid": os.getuid()}))
    with rt.session() as h:
        out = rt.run(h, RunRequest(argv=[sys.executable, "-c", "import os; print(os.getpid(), os.getuid())"],
                                   limits=limits, wall_time_ms=5_000))
    assert out.exit_code == 0, out.stderr
    pid, uid = out.stdout.split()
    assert (leaves[0] / "cgroup.procs").read_text() == pid.decode()
    assert int(uid) == os.getuid()
    assert torn_down == leaves
