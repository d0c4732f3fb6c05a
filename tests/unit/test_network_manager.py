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
Unit tests for the network fabric.
"""
import ipaddress
import os
import time

import pytest

from convoy.errors import NetworkError
from convoy.MANAGERS.network_manager import NetworkFabric


class TestNetworkFabric:
    """Tests for NetworkFabric."""

    def test_ensure_creates_once(self, tmp_path):
        """Ensuring twice returns the same network."""
        fabric = NetworkFabric(str(tmp_path))
        handle = fabric.ensure("shop")
        assert handle.name == "shop_default"
        assert handle.driver == "bridge"
        assert ipaddress.ip_address(handle.gateway) in ipaddress.ip_network(handle.subnet)
        assert fabric.ensure("shop") == handle
        assert os.path.exists(fabric.hosts_path(handle))

    def test_subnets_are_per_unit(self):
        """Different units get stable loopback subnets."""
        a = NetworkFabric.subnet_for("shop")
        assert a == NetworkFabric.subnet_for("shop")
        assert a.subnet_of(ipaddress.ip_network("127.0.0.0/8"))
        assert not a.subnet_of(ipaddress.ip_network("127.0.0.0/16"))

    def test_attach_and_resolve(self, tmp_path):
        """Attached running containers resolve by name and alias."""
        fabric = NetworkFabric(str(tmp_path))
        handle = fabric.ensure("shop")
        address = fabric.attach(handle, "c1", "web", aliases=["frontend"])
        assert fabric.resolve(handle, "web") == address
        assert fabric.resolve(handle, "frontend") == address
        assert address != handle.gateway

    def test_resolve_unknown(self, tmp_path):
        """Unknown names are a NetworkError."""
        fabric = NetworkFabric(str(tmp_path))
        handle = fabric.ensure("shop")
        with pytest.raises(NetworkError) as excinfo:
            fabric.resolve(handle, "ghost")
        assert excinfo.value.exit_code == 30

    def test_resolve_not_running(self, tmp_path):
        """Attached but not running containers do not resolve."""
        running = set()
        fabric = NetworkFabric(str(tmp_path), is_alive=lambda cid: cid in running)
        handle = fabric.ensure("shop")
        fabric.attach(handle, "c1", "db")
        with pytest.raises(NetworkError, match="not running"):
            fabric.resolve(handle, "db")
        running.add("c1")
        assert fabric.resolve(handle, "db")

    def test_resolve_with_retry_waits(self, tmp_path):
        """Retries until the container comes up."""
        started = time.monotonic()
        fabric = NetworkFabric(str(tmp_path), is_alive=lambda cid: time.monotonic() - started > 0.3)
        handle = fabric.ensure("shop")
        address = fabric.attach(handle, "c1", "db")
        assert fabric.resolve_with_retry(handle, "db", timeout=5) == address

    def test_resolve_with_retry_gives_up(self, tmp_path):
        """Retries stop at the timeout."""
        fabric = NetworkFabric(str(tmp_path), is_alive=lambda cid: False)
        handle = fabric.ensure("shop")
        fabric.attach(handle, "c1", "db")
        with pytest.raises(NetworkError):
            fabric.resolve_with_retry(handle, "db", timeout=0.2)

    def test_reattach_keeps_address(self, tmp_path):
        """A recreated container keeps its service's address."""
        fabric = NetworkFabric(str(tmp_path))
        handle = fabric.ensure("shop")
        first = fabric.attach(handle, "c1", "web")
        other = fabric.attach(handle, "c2", "db")
        fabric.detach(handle, "web", "c1")
        assert fabric.attach(handle, "c3", "web") == first
        assert other != first

    def test_detach_ignores_stale_container(self, tmp_path):
        """Detaching an old container id leaves the newer entry."""
        fabric = NetworkFabric(str(tmp_path))
        handle = fabric.ensure("shop")
        fabric.attach(handle, "c1", "web")
        fabric.attach(handle, "c2", "web")
        fabric.detach(handle, "web", "c1")
        assert handle.lookup("web").container_id == "c2"
        fabric.detach(handle, "web")
        assert handle.lookup("web") is None

    def test_state_is_shared_through_disk(self, tmp_path):
        """A second fabric instance sees the same table."""
        fabric = NetworkFabric(str(tmp_path))
        address = fabric.attach(fabric.ensure("shop"), "c1", "web")
        reloaded = NetworkFabric(str(tmp_path)).load("shop")
        assert reloaded.lookup("web").address == address

    def test_hosts_content(self, tmp_path):
        """The hosts file lists every attached service."""
        fabric = NetworkFabric(str(tmp_path))
        handle = fabric.ensure("shop")
        address = fabric.attach(handle, "c1", "web", aliases=["frontend"])
        content = open(fabric.hosts_path(handle)).read()
        assert "localhost" in content
        assert f"{address}\tweb\tfrontend" in content

    def test_discovery_env(self, tmp_path):
        """Discovery variables for dependencies."""
        fabric = NetworkFabric(str(tmp_path))
        handle = fabric.ensure("shop")
        address = fabric.attach(handle, "c1", "user-db")
        env = fabric.discovery_env(handle, ["user-db"], {"user-db": [5432]})
        assert env == {"USER_DB_HOST": "user-db", "USER_DB_ADDRESS": address, "USER_DB_PORT": "5432"}

    def test_teardown(self, tmp_path):
        """Teardown removes the record and the hosts file."""
        fabric = NetworkFabric(str(tmp_path))
        handle = fabric.ensure("shop")
        fabric.attach(handle, "c1", "web")
        fabric.teardown(handle)
        assert fabric.load("shop") is None
        assert not os.path.exists(fabric.hosts_path(handle))
