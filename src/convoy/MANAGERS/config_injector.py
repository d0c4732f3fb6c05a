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
Materialization of a container's environment and volume bindings.

Environment values may reference other services through Jinja2 expressions, e.g.
``API_URL: "http://{{ backend.host }}:{{ backend.port }}/message"``. They are
rendered once, when the container is created; a container keeps the literal
values it was created with even if the network changes later.
"""
import logging
import os
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values
from jinja2 import Environment, StrictUndefined, TemplateError
from pydantic import BaseModel

from ..errors import ConfigError
from ..MODELS.container_image import Image
from ..MODELS.container_instance import VolumeBinding
from ..MODELS.network import NetworkHandle
from ..MODELS.orchestration_config import OrchestrationUnit
from ..MODELS.service_definition import ServiceDescriptor
from ..RUNNERS.process_runner import base_environment
from .network_manager import NetworkFabric
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class MaterializedConfig(BaseModel):
    """Literal environment and absolute volume bindings for one container."""

    env: Dict[str, str]
    volumes: List[VolumeBinding] = []


class Endpoint:
    """
    What one service looks like to the others, as seen from inside a template.
    """
    def __init__(self, name: str, ports: List[int], fabric: NetworkFabric, handle: NetworkHandle):
        self.name = name
        self.host = name
        self.ports = ports
        self._fabric = fabric
        self._handle = handle

    @property
    def port(self) -> int:
        if not self.ports:
            raise ConfigError("service declares no container port", service=self.name)
        return self.ports[0]

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def address(self) -> str:
        """The fabric address, resolved now (with retry)."""
        return self._fabric.resolve_with_retry(self._handle, self.name)

    def __str__(self) -> str:
        return self.host


class ConfigInjector:
    """
    Builds the final environment and volume list of a container at creation time.
    """
    def __init__(self,
                 unit: OrchestrationUnit,
                 fabric: NetworkFabric,
                 volumes: VolumeManager,
                 images: Optional[Mapping[str, Image]] = None):
        """
        Initializes the injector.

        :param unit: The unit, for peer services and relative paths.
        :param fabric: Used to resolve peer addresses.
        :param volumes: Prepares volume sources.
        :param images: Current image per service, for ENV and EXPOSE defaults.
        """
        self.unit = unit
        self.fabric = fabric
        self.volumes = volumes
        self.images = images if images is not None else {}
        self.jinja = Environment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True)

    def container_ports(self, name: str) -> List[int]:
        """
        Declared container ports of a service, falling back to its image's EXPOSE.
        """
        ports = self.unit.services[name].container_ports()
        image = self.images.get(name)
        if image is not None:
            ports += [p for p in image.config.exposed_ports if p not in ports]
        return ports

    def materialize(self, descriptor: ServiceDescriptor, handle: NetworkHandle) -> MaterializedConfig:
        """
        Resolves a service's environment and volumes into literal values.

        :param descriptor: The service being created.
        :param handle: The unit's network fabric.
        :return: The materialized configuration.
        :raises ConfigError: On unreadable env files, bad expressions or unusable volumes.
        :raises NetworkError: If an expression needs the address of a service that never came up.
        """
        name = descriptor.name
        env = base_environment()

        image = self.images.get(name)
        if image is not None:
            env.update(image.config.env)

        for env_file in descriptor.env_files:
            env.update(self._read_env_file(env_file, name))

        context = self._template_context(handle)
        for key, value in descriptor.environment.items():
            env[key] = self._render(key, value, context, name)

        entry = handle.lookup(name)
        env.update({
            "CONVOY_UNIT": self.unit.name,
            "CONVOY_SERVICE": name,
            "CONVOY_HOSTS_FILE": self.fabric.hosts_path(handle),
            "HOSTNAME": name,
        })
        if entry is not None:
            env["CONVOY_ADDRESS"] = entry.address

        ports = {dep: self.container_ports(dep) for dep in descriptor.depends_on}
        for key, value in self.fabric.discovery_env(handle, descriptor.depends_on, ports).items():
            env.setdefault(key, value)

        bindings = [self.volumes.prepare(mount, service=name) for mount in descriptor.volumes]
        return MaterializedConfig(env=env, volumes=bindings)

    def _read_env_file(self, env_file: str, service: str) -> Dict[str, str]:
        path = os.path.join(self.unit.base_dir, env_file)
        if not os.path.isfile(path):
            raise ConfigError(f"env file {path} not found", service=service)
        return {k: v for k, v in dotenv_values(path).items() if v is not None}

    def _template_context(self, handle: NetworkHandle) -> Dict[str, object]:
        endpoints = {
            svc: Endpoint(svc, self.container_ports(svc), self.fabric, handle)
            for svc in self.unit.services
        }
        context: Dict[str, object] = {"services": endpoints, "unit": self.unit.name}
        for svc, endpoint in endpoints.items():
            if svc.isidentifier():
                context.setdefault(svc, endpoint)
        return context

    def _render(self, key: str, value: str, context: Dict[str, object], service: str) -> str:
        """
        Renders one value; plain strings pass through untouched.
        """
        if '{{' not in value and '{%' not in value:
            return value
        try:
            return self.jinja.from_string(value).render(context)
        except TemplateError as e:
            raise ConfigError(f"cannot expand {key}: {e}", service=service)
