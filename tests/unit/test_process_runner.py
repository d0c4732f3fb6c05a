import os
import sys
import time

import psutil
import pytest

from convoy.RUNNERS.process_runner import ProcessRunner, base_environment


def test_base_environment_only_keeps_host_essentials(monkeypatch):
    monkeypatch.setenv("PATH", "/usr/bin")
    monkeypatch.setenv("SOME_TOKEN", "x")
    env = base_environment()
    assert env["PATH"] == "/usr/bin"
    assert "SOME_TOKEN" not in env


def test_start_redirects_output_and_creates_dirs(tmp_path):
    log_file = tmp_path / "logs" / "svc.log"
    workdir = tmp_path / "work"
    runner = ProcessRunner("svc", str(log_file))
    pid = runner.start([sys.executable, "-c", "import os; print(os.getcwd()); print(os.environ['X'])"],
                       {"X": "42"}, str(workdir))
    assert pid == runner.pid
    assert runner.create_time is not None
    runner.process.wait(timeout=10)

    assert runner.get_exit_code() == 0
    assert not runner.is_running()
    assert log_file.read_text().splitlines() == [str(workdir), "42"]


def test_output_is_appended(tmp_path):
    log_file = tmp_path / "svc.log"
    for word in ("one", "two"):
        runner = ProcessRunner("svc", str(log_file))
        runner.start([sys.executable, "-c", f"print('{word}')"], {})
        runner.process.wait(timeout=10)
    assert log_file.read_text() == "one\ntwo\n"


def test_missing_executable_raises(tmp_path):
    runner = ProcessRunner("svc", str(tmp_path / "svc.log"))
    with pytest.raises(OSError):
        runner.start([str(tmp_path / "nope")], {})
    assert runner.pid is None


def test_stop_terminates_process_tree(tmp_path):
    runner = ProcessRunner("svc")
    script = (
        "import subprocess, sys, time;"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']);"
        "time.sleep(60)"
    )
    runner.start([sys.executable, "-c", script], {})
    parent = psutil.Process(runner.pid)
    deadline = time.time() + 10
    while not parent.children() and time.time() < deadline:
        time.sleep(0.05)
    children = parent.children()
    assert children

    assert runner.stop(timeout=5) is False
    assert not runner.is_running()
    assert runner.get_exit_code() == -15
    psutil.wait_procs(children, timeout=5)
    assert not any(c.is_running() and c.status() != psutil.STATUS_ZOMBIE for c in children)


def test_stop_kills_after_timeout(tmp_path):
    log_file = tmp_path / "svc.log"
    runner = ProcessRunner("svc", str(log_file))
    script = (
        "import signal, sys, time;"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN);"
        "print('ready', flush=True);"
        "time.sleep(60)"
    )
    runner.start([sys.executable, "-c", script], {}, None)
    deadline = time.time() + 10
    while "ready" not in log_file.read_text() and time.time() < deadline:
        time.sleep(0.05)
    assert runner.stop(timeout=0.5) is True
    assert runner.get_exit_code() == -9


def test_attach_to_running_process():
    owner = ProcessRunner("svc")
    pid = owner.start([sys.executable, "-c", "import time; time.sleep(60)"], {})

    attached = ProcessRunner("svc")
    attached.attach(pid, owner.create_time)
    assert attached.is_running()
    # exit codes are only known to the owner
    assert attached.get_exit_code() is None

    attached.stop(timeout=5)
    owner.process.wait(timeout=5)
    assert not attached.is_running()
    assert not owner.is_running()


def test_attach_detects_pid_reuse():
    runner = ProcessRunner("svc")
    runner.attach(os.getpid(), create_time=psutil.Process().create_time() - 3600)
    assert not runner.is_running()
    # refusing to signal a process that is not ours
    assert runner.stop(timeout=0.1) is False


def test_attach_to_vanished_process():
    runner = ProcessRunner("svc")
    runner.attach(2 ** 22 + 12345)
    assert not runner.is_running()
    assert runner.stop() is False
