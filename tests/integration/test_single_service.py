import os

import psutil
import pytest

from convoy.errors import RuntimeFailure
from convoy.MANAGERS.service_orchestrator import Orchestrator
from convoy.MODELS.container_instance import ContainerState


@pytest.fixture
def orchestrators():
    created = []
    yield created
    for orchestrator in created:
        orchestrator.down()


def test_single_service_lifecycle(make_unit, settings, orchestrators, read_log, wait_for):
    unit = make_unit({"worker": {"args": ["sleep"], "environment": {"DEBUG": "true"}}})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)

    build, report = orchestrator.up()
    assert build.ok
    assert report.ok
    assert report.exit_code == 0
    assert report.outcomes["worker"].state == ContainerState.RUNNING

    instance = orchestrator.supervisor.containers["worker"]
    assert instance.created_at and instance.started_at
    assert psutil.pid_exists(instance.pid)
    assert instance.env["DEBUG"] == "true"
    assert instance.env["CONVOY_SERVICE"] == "worker"
    assert os.path.isfile(orchestrator.supervisor.state_path)

    assert wait_for(lambda: "DEBUG: true" in read_log(instance.log_path))
    assert "Dummy service starting..." in read_log(instance.log_path)

    rows = orchestrator.ps()
    assert [(r.service, r.state) for r in rows] == [("worker", ContainerState.RUNNING)]
    assert rows[0].pid == instance.pid
    assert rows[0].address == instance.address

    container_dir = os.path.dirname(instance.log_path)
    assert orchestrator.down() == ["worker"]
    assert orchestrator.supervisor.status() == {"worker": ContainerState.REMOVED}
    assert not os.path.exists(container_dir)
    assert orchestrator.supervisor.fabric.load(unit.name) is None
    assert not psutil.pid_exists(instance.pid)


def test_logs_stream_from_start(make_unit, settings, orchestrators, read_log, wait_for):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)
    orchestrator.up()
    instance = orchestrator.supervisor.containers["worker"]
    assert wait_for(lambda: "Working... 0" in read_log(instance.log_path))

    lines = list(orchestrator.supervisor.logs("worker", follow=False, from_start=True))
    assert lines[0] == "Dummy service starting..."
    assert "Working... 0" in lines

    # every call gets an independent stream
    again = list(orchestrator.supervisor.logs("worker", follow=False, from_start=True))
    assert again[:len(lines)] == lines


def test_logs_of_unknown_service(make_unit, settings):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    orchestrator = Orchestrator(unit, settings)
    with pytest.raises(RuntimeFailure) as excinfo:
        orchestrator.supervisor.logs("worker")
    assert excinfo.value.service == "worker"


def test_exit_while_starting_is_a_failure(make_unit, settings, orchestrators):
    unit = make_unit({"worker": {"args": ["exit", "3"]}})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)

    _, report = orchestrator.up()
    assert not report.ok
    assert report.exit_code == 40
    outcome = report.outcomes["worker"]
    assert outcome.state == ContainerState.FAILED
    assert "exited with code 3" in outcome.detail
    assert outcome.error.exit_status == 3
    assert orchestrator.supervisor.containers["worker"].exit_code == 3


def test_missing_executable_is_a_failure(make_unit, settings, orchestrators):
    unit = make_unit({"worker": {"command": ["/no/such/binary"]}})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)

    _, report = orchestrator.up()
    assert report.outcomes["worker"].state == ContainerState.FAILED
    assert "cannot execute /no/such/binary" in report.outcomes["worker"].detail
    assert report.exit_code == 40


def test_health_check_gates_running(make_unit, settings, orchestrators):
    unit = make_unit({"api": {
        "args": ["serve", "7000"],
        "healthcheck": {"test": "test -f ready", "interval": "100ms", "retries": 50},
    }})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)

    _, report = orchestrator.up()
    assert report.ok
    instance = orchestrator.supervisor.containers["api"]
    assert os.path.isfile(os.path.join(instance.workdir, "ready"))


def test_unhealthy_service_fails_and_is_killed(make_unit, settings, orchestrators):
    unit = make_unit({"api": {
        "args": ["sleep"],
        "healthcheck": {"test": "echo not yet >&2; exit 1", "interval": "100ms", "retries": 3},
    }})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)

    _, report = orchestrator.up()
    outcome = report.outcomes["api"]
    assert outcome.state == ContainerState.FAILED
    assert "not healthy after 0.3s: not yet" in outcome.detail
    instance = orchestrator.supervisor.containers["api"]
    assert not orchestrator.supervisor._runner(instance).is_running()


def test_probe_hook_overrides_health_check(make_unit, settings, orchestrators):
    unit = make_unit({"api": {
        "args": ["sleep"],
        "healthcheck": {"test": "exit 1", "interval": "100ms", "retries": 3},
    }})
    seen = []

    def ready(instance):
        seen.append(instance.service)
        return True

    orchestrator = Orchestrator(unit, settings, probes={"api": ready})
    orchestrators.append(orchestrator)
    _, report = orchestrator.up()
    assert report.ok
    assert seen == ["api"]


def test_process_death_is_noticed(make_unit, settings, orchestrators):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)
    orchestrator.up()

    instance = orchestrator.supervisor.containers["worker"]
    psutil.Process(instance.pid).kill()
    orchestrator.supervisor._runner(instance).process.wait(timeout=5)

    assert orchestrator.supervisor.status() == {"worker": ContainerState.FAILED}
    assert instance.error == "exited with code -9"


def test_stop_then_remove(make_unit, settings, orchestrators):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)
    orchestrator.up()
    supervisor = orchestrator.supervisor

    assert supervisor.stop(unit.name) == ["worker"]
    instance = supervisor.containers["worker"]
    assert instance.state == ContainerState.STOPPED
    assert instance.finished_at
    assert instance.error is None
    assert instance.exit_code == -15

    # stopping again is a no-op
    assert supervisor.stop() == []
    assert supervisor.remove(unit.name) == ["worker"]
    assert supervisor.containers["worker"].state == ContainerState.REMOVED


def test_stop_kills_after_grace_period(make_unit, settings, orchestrators, read_log, wait_for):
    unit = make_unit({"worker": {"args": ["stubborn"], "stop_grace_period": "500ms"}})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)
    orchestrator.up()
    instance = orchestrator.supervisor.containers["worker"]
    assert wait_for(lambda: "ignoring SIGTERM" in read_log(instance.log_path))

    orchestrator.supervisor.stop()
    assert instance.state == ContainerState.STOPPED
    assert instance.error == "killed after 0.5s"
    assert instance.exit_code == -9


def test_supervisor_for_wrong_unit(make_unit, settings):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    orchestrator = Orchestrator(unit, settings)
    with pytest.raises(RuntimeFailure):
        orchestrator.supervisor.stop("other")
    with pytest.raises(RuntimeFailure):
        orchestrator.supervisor.status("other")


def test_later_invocation_reattaches(make_unit, settings, orchestrators):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    first = Orchestrator(unit, settings)
    first.up()
    pid = first.supervisor.containers["worker"].pid

    second = Orchestrator(unit, settings)
    orchestrators.append(second)
    assert second.supervisor.status() == {"worker": ContainerState.RUNNING}
    assert second.supervisor.containers["worker"].pid == pid

    # a second up converges instead of starting another copy
    _, report = second.up()
    assert report.outcomes["worker"].detail == "up to date"
    assert second.supervisor.containers["worker"].pid == pid

    assert second.down() == ["worker"]
    first.supervisor._runner(first.supervisor.containers["worker"]).process.wait(timeout=5)
    assert not psutil.pid_exists(pid)


def _interrupt_stop(orchestrator):
    """Leaves the container recorded as STOPPING, as a Ctrl+C during ``down`` does."""
    instance = orchestrator.supervisor.containers["worker"]
    instance.transition(ContainerState.STOPPING)
    orchestrator.supervisor._save_state()
    return instance


def test_down_finishes_interrupted_stop(make_unit, settings):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    first = Orchestrator(unit, settings)
    first.up()
    instance = _interrupt_stop(first)

    second = Orchestrator(unit, settings)
    assert second.supervisor.status() == {"worker": ContainerState.STOPPING}
    assert second.down() == ["worker"]
    assert second.supervisor.status() == {"worker": ContainerState.REMOVED}

    first.supervisor._runner(instance).process.wait(timeout=5)
    assert not psutil.pid_exists(instance.pid)


def test_stop_finishes_interrupted_stop(make_unit, settings, orchestrators):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    orchestrator = Orchestrator(unit, settings)
    orchestrators.append(orchestrator)
    orchestrator.up()
    instance = _interrupt_stop(orchestrator)

    assert orchestrator.supervisor.stop() == ["worker"]
    assert instance.state == ContainerState.STOPPED
    assert instance.exit_code == -15


def test_up_replaces_interrupted_stop(make_unit, settings, orchestrators):
    unit = make_unit({"worker": {"args": ["sleep"]}})
    first = Orchestrator(unit, settings)
    first.up()
    old = _interrupt_stop(first)

    second = Orchestrator(unit, settings)
    orchestrators.append(second)
    _, report = second.up()
    assert report.ok
    assert second.supervisor.containers["worker"].id != old.id
    assert second.supervisor.containers["worker"].state == ContainerState.RUNNING
    first.supervisor._runner(old).process.wait(timeout=5)
    assert not psutil.pid_exists(old.pid)
