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
The network fabric: one private bridge-mode subnet per orchestration unit with a
name-resolution table keyed by service name.

Every service gets a stable loopback address inside the unit's subnet, so services
can all listen on their own container ports without clashing. Resolution consults
the table and the liveness of the attached container on every call.
"""
import hashlib
import ipaddress
import logging
import os
from typing import Callable, Dict, Iterable, List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_delay, wait_exponential

from ..errors import NetworkError
from ..MODELS.network import NetworkEntry, NetworkHandle
from ..UTILS.state_files import read_json, remove_file, write_json

logger = logging.getLogger(__name__)


class NetworkFabric:
    """
    Creates, attaches to, resolves on and tears down unit networks.
    """
    def __init__(self,
                 networks_dir: str,
                 is_alive: Optional[Callable[[str], bool]] = None,
                 retry_timeout: float = 10.0):
        """
        Initializes the fabric.

        :param networks_dir: Where network records and hosts files are kept.
        :param is_alive: Tells whether a container id is currently running.
        :param retry_timeout: Upper bound for resolve_with_retry, in seconds.
        """
        self.networks_dir = networks_dir
        self.is_alive = is_alive or (lambda container_id: True)
        self.retry_timeout = retry_timeout

    @staticmethod
    def network_name(unit_id: str) -> str:
        return f"{unit_id}_default"

    @staticmethod
    def subnet_for(unit_id: str) -> ipaddress.IPv4Network:
        """
        A /24 inside 127.0.0.0/8 derived from the unit name, away from 127.0.0.0/16.
        """
        digest = hashlib.sha256(unit_id.encode()).digest()
        second = 16 + digest[0] % 239
        third = digest[1]
        return ipaddress.IPv4Network(f"127.{second}.{third}.0/24")

    def _record_path(self, name: str) -> str:
        return os.path.join(self.networks_dir, f"{name}.json")

    def hosts_path(self, handle: NetworkHandle) -> str:
        return os.path.join(self.networks_dir, f"{handle.name}.hosts")

    def load(self, unit_id: str) -> Optional[NetworkHandle]:
        """
        The existing fabric of a unit, if any.
        """
        data = read_json(self._record_path(self.network_name(unit_id)))
        return NetworkHandle(**data) if data else None

    def ensure(self, unit_id: str) -> NetworkHandle:
        """
        Returns the unit's fabric, creating it on first use.

        :param unit_id: The orchestration unit name.
        :return: The network handle.
        """
        handle = self.load(unit_id)
        if handle is not None:
            return handle

        subnet = self.subnet_for(unit_id)
        handle = NetworkHandle(
            unit=unit_id,
            name=self.network_name(unit_id),
            subnet=str(subnet),
            gateway=str(subnet.network_address + 1),
        )
        logger.info("Creating network %s (%s)", handle.name, handle.subnet)
        self._save(handle)
        return handle

    def attach(self,
               handle: NetworkHandle,
               container_id: str,
               service_name: str,
               aliases: Iterable[str] = ()) -> str:
        """
        Attaches a container under its service name, replacing any previous instance
        of that service.

        :return: The address assigned to the service.
        """
        address = handle.leases.get(service_name) or self._allocate(handle)
        handle.leases[service_name] = address
        handle.entries[service_name] = NetworkEntry(
            container_id=container_id,
            address=address,
            aliases=sorted(set(aliases) - {service_name}),
        )
        logger.debug("[%s] Attached %s at %s on %s", service_name, container_id, address, handle.name)
        self._save(handle)
        return address

    def detach(self, handle: NetworkHandle, service_name: str, container_id: Optional[str] = None) -> None:
        """
        Drops a service from the resolution table. With ``container_id`` only that
        instance is dropped, leaving a newer one in place.
        """
        entry = handle.entries.get(service_name)
        if entry is None or (container_id is not None and entry.container_id != container_id):
            return
        del handle.entries[service_name]
        self._save(handle)

    def resolve(self, handle: NetworkHandle, service_name: str) -> str:
        """
        The current address of a service.

        :raises NetworkError: If the service is not attached or not running yet.
        """
        entry = handle.lookup(service_name)
        if entry is None:
            raise NetworkError(f"not attached to network {handle.name}", service=service_name)
        if not self.is_alive(entry.container_id):
            raise NetworkError(f"container {entry.container_id} is not running", service=service_name)
        return entry.address

    def resolve_with_retry(self,
                           handle: NetworkHandle,
                           service_name: str,
                           timeout: Optional[float] = None) -> str:
        """
        Resolves with exponential backoff, for dependencies that are still starting.

        :raises NetworkError: When the service is still unresolvable after ``timeout``.
        """
        timeout = self.retry_timeout if timeout is None else timeout
        for attempt in Retrying(
            retry=retry_if_exception_type(NetworkError),
            stop=stop_after_delay(timeout),
            wait=wait_exponential(multiplier=0.05, max=1.0),
            reraise=True,
        ):
            with attempt:
                return self.resolve(handle, service_name)

    def teardown(self, handle: NetworkHandle) -> None:
        """
        Removes the fabric. Callers make sure no container of the unit remains.
        """
        logger.info("Removing network %s", handle.name)
        handle.entries.clear()
        remove_file(self._record_path(handle.name))
        remove_file(self.hosts_path(handle))

    def hosts_content(self, handle: NetworkHandle) -> str:
        """
        The resolution table in /etc/hosts format.
        """
        lines = ["127.0.0.1\tlocalhost", f"{handle.gateway}\t{handle.name}-gateway"]
        for name in sorted(handle.entries):
            entry = handle.entries[name]
            lines.append("\t".join([entry.address, name] + entry.aliases))
        return "\n".join(lines) + "\n"

    def discovery_env(self,
                      handle: NetworkHandle,
                      names: Iterable[str],
                      ports: Dict[str, List[int]]) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=db, DB_ADDRESS=127.18.4.2, DB_PORT=5432
        """
        env = {}
        for name in names:
            prefix = name.upper().replace('-', '_').replace('.', '_')
            env[f"{prefix}_HOST"] = name
            entry = handle.lookup(name)
            if entry is not None:
                env[f"{prefix}_ADDRESS"] = entry.address
            if ports.get(name):
                env[f"{prefix}_PORT"] = str(ports[name][0])
        return env

    def _allocate(self, handle: NetworkHandle) -> str:
        taken = set(handle.leases.values()) | {handle.gateway}
        for host in ipaddress.IPv4Network(handle.subnet).hosts():
            if str(host) not in taken:
                return str(host)
        raise NetworkError(f"network {handle.name} has no free addresses")

    def _save(self, handle: NetworkHandle) -> None:
        write_json(self._record_path(handle.name), handle.model_dump())
        path = self.hosts_path(handle)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            f.write(self.hosts_content(handle))
