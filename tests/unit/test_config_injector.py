# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for environment and volume materialization.
"""
import os

import pytest

from convoy.errors import ConfigError, NetworkError
from convoy.MANAGERS.config_injector import ConfigInjector
from convoy.MANAGERS.network_manager import NetworkFabric
from convoy.MANAGERS.volume_manager import VolumeManager
from convoy.MODELS.container_image import Image, ImageConfig
from convoy.MODELS.orchestration_config import OrchestrationUnit
from convoy.MODELS.service_definition import PortMapping, ServiceDescriptor, VolumeMount


def _setup(tmp_path, services, running=("c-backend",), images=None):
    unit = OrchestrationUnit(name="shop", base_dir=str(tmp_path), services={s.name: s for s in services})
    fabric = NetworkFabric(str(tmp_path / "networks"), is_alive=lambda cid: cid in running, retry_timeout=0.2)
    handle = fabric.ensure("shop")
    volumes = VolumeManager(str(tmp_path), str(tmp_path / "volumes"), "shop")
    injector = ConfigInjector(unit, fabric, volumes, images=images)
    return injector, fabric, handle


BACKEND = ServiceDescriptor(name="backend", ports=[PortMapping(container_port=8000)])


class TestConfigInjector:
    """Tests for ConfigInjector."""

    def test_literal_values_pass_through(self, tmp_path):
        """Plain values are copied as they are."""
        ui = ServiceDescriptor(name="ui", environment={"MODE": "prod", "RAW": "a $b {c}"})
        injector, _, handle = _setup(tmp_path, [ui])
        env = injector.materialize(ui, handle).env
        assert env["MODE"] == "prod"
        assert env["RAW"] == "a $b {c}"
        assert env["CONVOY_UNIT"] == "shop"
        assert env["CONVOY_SERVICE"] == "ui"
        assert env["HOSTNAME"] == "ui"

    def test_references_to_other_services(self, tmp_path):
        """Templates see every service's host, port, url and address."""
        ui = ServiceDescriptor(name="ui", depends_on=["backend"], environment={
            "API": "http://{{ backend.host }}:{{ backend.port }}/message",
            "URL": "{{ services['backend'].url }}",
            "ADDR": "{{ backend.address }}",
        })
        injector, fabric, handle = _setup(tmp_path, [BACKEND, ui])
        address = fabric.attach(handle, "c-backend", "backend")
        env = injector.materialize(ui, handle).env
        assert env["API"] == "http://backend:8000/message"
        assert env["URL"] == "http://backend:8000"
        assert env["ADDR"] == address
        assert env["BACKEND_HOST"] == "backend"
        assert env["BACKEND_ADDRESS"] == address
        assert env["BACKEND_PORT"] == "8000"

    def test_unknown_reference_is_config_error(self, tmp_path):
        """Referencing an undefined name fails."""
        ui = ServiceDescriptor(name="ui", environment={"API": "{{ nobody.port }}"})
        injector, _, handle = _setup(tmp_path, [ui])
        with pytest.raises(ConfigError) as excinfo:
            injector.materialize(ui, handle)
        assert excinfo.value.service == "ui"
        assert "API" in str(excinfo.value)

    def test_port_of_service_without_ports(self, tmp_path):
        """A service declaring no port has no port to reference."""
        quiet = ServiceDescriptor(name="quiet")
        ui = ServiceDescriptor(name="ui", environment={"P": "{{ quiet.port }}"})
        injector, _, handle = _setup(tmp_path, [quiet, ui])
        with pytest.raises(ConfigError, match="no container port"):
            injector.materialize(ui, handle)

    def test_image_exposed_ports_are_used(self, tmp_path):
        """EXPOSE in the image counts as a container port."""
        worker = ServiceDescriptor(name="worker")
        ui = ServiceDescriptor(name="ui", environment={"P": "{{ worker.port }}"})
        image = Image(reference="w:1", repository="w", tag="1", fingerprint="f" * 64, rootfs_path="/x",
                      config=ImageConfig(exposed_ports=[9000]))
        injector, _, handle = _setup(tmp_path, [worker, ui], images={"worker": image})
        assert injector.materialize(ui, handle).env["P"] == "9000"

    def test_address_of_stopped_service(self, tmp_path):
        """Resolving a service that never comes up is a NetworkError."""
        ui = ServiceDescriptor(name="ui", environment={"ADDR": "{{ backend.address }}"})
        injector, fabric, handle = _setup(tmp_path, [BACKEND, ui], running=())
        fabric.attach(handle, "c-backend", "backend")
        with pytest.raises(NetworkError):
            injector.materialize(ui, handle)

    def test_layering(self, tmp_path):
        """Image env < env files < environment."""
        (tmp_path / "app.env").write_text("FROM_FILE=file\nSHARED=file\n")
        app = ServiceDescriptor(name="app", env_files=["app.env"], environment={"SHARED": "descriptor"})
        image = Image(reference="a:1", repository="a", tag="1", fingerprint="f" * 64, rootfs_path="/x",
                      config=ImageConfig(env={"FROM_IMAGE": "image", "FROM_FILE": "image"}))
        injector, _, handle = _setup(tmp_path, [app], images={"app": image})
        env = injector.materialize(app, handle).env
        assert env["FROM_IMAGE"] == "image"
        assert env["FROM_FILE"] == "file"
        assert env["SHARED"] == "descriptor"
        if "PATH" in os.environ:
            assert env["PATH"] == os.environ["PATH"]

    def test_missing_env_file(self, tmp_path):
        """A missing env file is a ConfigError."""
        app = ServiceDescriptor(name="app", env_files=["missing.env"])
        injector, _, handle = _setup(tmp_path, [app])
        with pytest.raises(ConfigError, match="missing.env"):
            injector.materialize(app, handle)

    def test_volumes_are_prepared(self, tmp_path):
        """Volume sources become absolute and exist."""
        app = ServiceDescriptor(name="app", volumes=[
            VolumeMount(source="./data", target="/data"),
            VolumeMount(source="cache", target="/cache", read_only=True),
        ])
        injector, _, handle = _setup(tmp_path, [app])
        volumes = injector.materialize(app, handle).volumes
        assert volumes[0].source == str(tmp_path / "data")
        assert os.path.isdir(volumes[1].source)
        assert volumes[1].read_only

    def test_materialize_is_deterministic(self, tmp_path):
        """The same inputs give the same environment."""
        ui = ServiceDescriptor(name="ui", depends_on=["backend"],
                               environment={"API": "{{ backend.url }}", "A": "1"})
        injector, fabric, handle = _setup(tmp_path, [BACKEND, ui])
        fabric.attach(handle, "c-backend", "backend")
        assert injector.materialize(ui, handle) == injector.materialize(ui, handle)
