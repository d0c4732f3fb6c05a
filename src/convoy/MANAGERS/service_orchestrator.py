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
Orchestration for multiple services: builds images, then brings the unit up in
dependency order, and takes it down again.
"""
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from ..BUILDERS.image_builder import BuildResolver
from ..BUILDERS.image_store import ImageStore
from ..errors import BuildError, ValidationError
from ..MODELS.container_image import Image
from ..MODELS.container_instance import ContainerState
from ..MODELS.orchestration_config import OrchestrationUnit
from ..MODELS.settings import RuntimeSettings
from ..RUNNERS.dependency_resolver import DependencyScheduler
from .health_probe import ProbeHook
from .log_aggregator import LogAggregator
from .runtime_supervisor import RuntimeSupervisor, StartReport

logger = logging.getLogger(__name__)


@dataclass
class BuildReport:
    """Images produced per service, and the services whose build failed."""

    images: Dict[str, Image] = field(default_factory=dict)
    errors: Dict[str, BuildError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class ServiceStatus:
    """One row of ``ps``."""

    service: str
    state: ContainerState
    container_id: str = ""
    image: str = ""
    pid: Optional[int] = None
    address: str = ""
    ports: str = ""
    detail: str = ""


class Orchestrator:
    """
    Orchestrates the services of one unit based on their dependencies.
    """
    def __init__(self,
                 unit: OrchestrationUnit,
                 settings: Optional[RuntimeSettings] = None,
                 probes: Optional[Dict[str, ProbeHook]] = None):
        """
        Initializes the orchestrator.

        :param unit: A validated orchestration unit.
        :param settings: Runtime settings, defaults to ``RuntimeSettings.from_env()``.
        :param probes: Readiness hooks per service.
        """
        self.unit = unit
        self.settings = settings or RuntimeSettings.from_env()
        self.scheduler = DependencyScheduler()
        state_dir = self.settings.resolve_state_dir(unit.base_dir)
        self.store = ImageStore(os.path.join(state_dir, "images"))
        self.builder = BuildResolver(unit, self.store, self.settings)
        self.supervisor = RuntimeSupervisor(unit, self.settings, probes=probes)

    def _selection(self, services: Optional[Iterable[str]]) -> List[str]:
        if not services:
            return sorted(self.unit.services)
        unknown = sorted(set(services) - set(self.unit.services))
        if unknown:
            raise ValidationError(f"no such service: {', '.join(unknown)}")
        return sorted(self.scheduler.with_dependencies(self.unit.services, services))

    def build(self, services: Optional[Iterable[str]] = None, force: bool = False,
              reuse: bool = False) -> BuildReport:
        """
        Resolves an image for each selected service, building where needed.

        :param services: Services to build, with their dependencies. Defaults to all.
        :param force: Rebuild even when the build context is unchanged.
        :param reuse: Take the repository's current image as is, when there is one.
        :return: Images and build errors per service.
        """
        report = BuildReport()
        for name in self._selection(services):
            descriptor = self.unit.services[name]
            if reuse and descriptor.build is not None:
                current = self.store.get(self.builder.repository_for(descriptor))
                if current is not None:
                    report.images[name] = current
                    continue
            try:
                report.images[name] = self.builder.resolve(descriptor, force=force)
            except BuildError as e:
                logger.error("[%s] Build failed: %s", name, e.cause)
                report.errors[name] = e
        return report

    def up(self,
           services: Optional[Iterable[str]] = None,
           build: bool = False,
           cancel: Optional[threading.Event] = None) -> Tuple[BuildReport, StartReport]:
        """
        Brings the selected services and their dependencies to ``RUNNING``.

        Services already running with their current image are left alone; stale or
        dead containers are recreated.

        :param services: Services to start. Defaults to all.
        :param build: Rebuild images whose build context changed. Without it an
            existing image is reused even if its context has changed since.
        :param cancel: Set from another thread to abort the start.
        """
        names = self._selection(services)
        layers = self.scheduler.schedule({n: self.unit.services[n] for n in names})
        logger.info("Starting %s in layers: %s", self.unit.name,
                    " -> ".join(",".join(layer) for layer in layers))

        build_report = self.build(names, reuse=not build)
        start_report = self.supervisor.start(
            layers,
            self.unit.services,
            build_report.images,
            cancel=cancel,
            build_errors=build_report.errors,
        )
        return build_report, start_report

    def down(self, remove_volumes: bool = False, remove_images: bool = False) -> List[str]:
        """
        Stops and removes every container of the unit and its network.

        :param remove_volumes: Also delete the unit's named volumes.
        :param remove_images: Also delete the images built for the unit's services.
        :return: The services whose container was removed.
        """
        removed = self.supervisor.remove(self.unit.name)
        if remove_volumes:
            for volume in self.supervisor.volumes.remove_all():
                logger.info("Removed volume %s", volume)
        if remove_images:
            built = {
                self.builder.repository_for(d) for d in self.unit.services.values() if d.build is not None
            }
            keep = [i.reference for i in self.store.list_images() if i.repository not in built]
            stats = self.store.prune(keep)
            logger.info("Removed %d images, %d bytes freed", stats["removed_images"], stats["freed_bytes"])
        return removed

    def ps(self) -> List[ServiceStatus]:
        states = self.supervisor.status(self.unit.name)
        rows = []
        for name, state in states.items():
            instance = self.supervisor.containers.get(name)
            if instance is None or state == ContainerState.REMOVED:
                rows.append(ServiceStatus(name, state))
                continue
            ports = ", ".join(
                f"{p.host_ip}:{p.host_port}->{p.container_port}/tcp" for p in instance.ports
            )
            rows.append(ServiceStatus(
                service=name,
                state=state,
                container_id=instance.id,
                image=instance.image,
                pid=instance.pid,
                address=instance.address or "",
                ports=ports,
                detail=instance.error or "",
            ))
        return rows

    def logs(self, services: Optional[Iterable[str]] = None, follow: bool = False) -> Iterator[Tuple[str, str]]:
        """
        Interleaved (service, line) pairs from the selected containers, from the start
        of their logs.
        """
        if services:
            names = list(services)
            unknown = sorted(set(names) - set(self.unit.services) - set(self.supervisor.containers))
            if unknown:
                raise ValidationError(f"no such service: {', '.join(unknown)}")
        else:
            names = [
                name for name, inst in sorted(self.supervisor.containers.items())
                if inst.state != ContainerState.REMOVED
            ]
        followers = {name: self.supervisor.follower(name, follow=follow) for name in names}
        return LogAggregator(followers, self.settings.poll_interval).lines(follow_forever=follow)
