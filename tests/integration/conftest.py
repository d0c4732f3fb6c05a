import json
import os
import shutil
import sys
import time

import pytest
import yaml

from convoy.MODELS.settings import RuntimeSettings
from convoy.PARSERS.unit_validator import load_unit

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


@pytest.fixture
def settings():
    return RuntimeSettings(
        start_grace=0.3,
        start_timeout=20,
        stop_timeout=3,
        network_retry_timeout=2,
        poll_interval=0.05,
    )


@pytest.fixture
def make_unit(tmp_path):
    """
    Writes one build context per service around dummy_service.py, plus the
    descriptor, and loads the unit. ``args`` are the dummy service's arguments;
    ``steps`` are extra Dockerfile lines; everything else goes into the service
    definition as is.
    """
    def make(services, name="itest"):
        compose = {"services": {}}
        for service, definition in services.items():
            definition = dict(definition)
            context = tmp_path / service
            context.mkdir()
            shutil.copy(DUMMY, context / "dummy_service.py")
            cmd = json.dumps([sys.executable, "-u", "/app/dummy_service.py"] + definition.pop("args", []))
            lines = ["FROM scratch", "WORKDIR /app", "COPY dummy_service.py ."]
            lines += definition.pop("steps", [])
            lines.append(f"CMD {cmd}")
            (context / "Dockerfile").write_text("\n".join(lines) + "\n")
            compose["services"][service] = dict(build=f"./{service}", **definition)
        path = tmp_path / "convoy.yml"
        path.write_text(yaml.safe_dump(compose))
        return load_unit(str(path), project_name=name)
    return make


def _wait_for(predicate, timeout=10.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def _read_log(path):
    if not path or not os.path.exists(path):
        return ""
    with open(path) as f:
        return f.read()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def read_log():
    return _read_log
