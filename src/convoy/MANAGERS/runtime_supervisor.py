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
The runtime supervisor: creates containers from images, starts them layer by layer,
watches them until they are running, and stops and removes them again.

Containers are native processes running in a private copy of their image's root
filesystem. Their records live in ``<state_dir>/state/<unit>.json`` so that a later
invocation can report on, follow and stop them; processes are re-attached by pid.
"""
import logging
import os
import secrets
import shutil
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from ..errors import ConfigError, ConvoyError, RuntimeFailure
from ..MODELS.container_image import Image
from ..MODELS.container_instance import ContainerInstance, ContainerState, PortBinding
from ..MODELS.network import NetworkHandle
from ..MODELS.orchestration_config import OrchestrationUnit
from ..MODELS.service_definition import ServiceDescriptor
from ..MODELS.settings import RuntimeSettings
from ..RUNNERS.dependency_resolver import DependencyScheduler
from ..RUNNERS.entrypoint_executor import EntrypointExecutor
from ..RUNNERS.port_forwarder import forwarder_command
from ..RUNNERS.process_runner import ProcessRunner
from ..UTILS.port_finder import get_free_port, is_listening, is_port_free
from ..UTILS.state_files import read_json, write_json
from .config_injector import ConfigInjector
from .health_probe import ProbeHook, ProbeTracker, probe_for
from .log_aggregator import LogFollower, follow as follow_log
from .network_manager import NetworkFabric
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

LOG_TAIL_LINES = 5
PUBLISH_TIMEOUT = 5.0
STOPPABLE = (ContainerState.STARTING, ContainerState.RUNNING, ContainerState.STOPPING)


@dataclass
class ServiceOutcome:
    """How far one service got during a start."""

    service: str
    state: ContainerState
    detail: str = ""
    error: Optional[ConvoyError] = None
    skipped: bool = False


@dataclass
class StartReport:
    """Per-service outcomes of a start, in the order the services were handled."""

    outcomes: Dict[str, ServiceOutcome] = field(default_factory=dict)
    cancelled: bool = False

    def record(self, outcome: ServiceOutcome) -> None:
        self.outcomes[outcome.service] = outcome

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(
            o.state == ContainerState.RUNNING for o in self.outcomes.values()
        )

    @property
    def errors(self) -> List[ConvoyError]:
        return [o.error for o in self.outcomes.values() if o.error is not None]

    @property
    def exit_code(self) -> int:
        """
        0 when every service runs; otherwise the code of the first error met.
        """
        if self.ok:
            return 0
        errors = self.errors
        if errors:
            return errors[0].exit_code
        if self.cancelled:
            return 130
        return RuntimeFailure.exit_code


def _tail(path: str, count: int = LOG_TAIL_LINES) -> List[str]:
    if not path or not os.path.exists(path):
        return []
    with open(path, 'r', errors='replace') as f:
        lines = [line.rstrip('\n') for line in f if line.strip()]
    return lines[-count:]


class RuntimeSupervisor:
    """
    Owns the containers of one orchestration unit.
    """
    def __init__(self,
                 unit: OrchestrationUnit,
                 settings: Optional[RuntimeSettings] = None,
                 images: Optional[Mapping[str, Image]] = None,
                 probes: Optional[Dict[str, ProbeHook]] = None):
        """
        Initializes the supervisor and loads the unit's container records.

        :param unit: The orchestration unit.
        :param settings: Timeouts and the state directory.
        :param images: Current image per service, if already known.
        :param probes: Readiness hooks per service, overriding descriptor health checks.
        """
        self.unit = unit
        self.settings = settings or RuntimeSettings()
        self.state_dir = self.settings.resolve_state_dir(unit.base_dir)
        self.containers_dir = os.path.join(self.state_dir, "containers")
        self.state_path = os.path.join(self.state_dir, "state", f"{unit.name}.json")

        self.images: Dict[str, Image] = dict(images or {})
        self.probes = dict(probes or {})
        self.scheduler = DependencyScheduler()
        self.entrypoints = EntrypointExecutor()
        self.fabric = NetworkFabric(
            os.path.join(self.state_dir, "networks"),
            is_alive=self.is_container_alive,
            retry_timeout=self.settings.network_retry_timeout,
        )
        self.volumes = VolumeManager(unit.base_dir, os.path.join(self.state_dir, "volumes"), unit.name)
        self.injector = ConfigInjector(unit, self.fabric, self.volumes, images=self.images)

        self._runners: Dict[str, ProcessRunner] = {}
        self.containers: Dict[str, ContainerInstance] = self._load_state()

    # -- records ---------------------------------------------------------------

    def _load_state(self) -> Dict[str, ContainerInstance]:
        data = read_json(self.state_path) or {}
        return {
            name: ContainerInstance(**record)
            for name, record in data.get("containers", {}).items()
        }

    def _save_state(self) -> None:
        write_json(self.state_path, {
            "unit": self.unit.name,
            "containers": {
                name: inst.model_dump(mode="json") for name, inst in sorted(self.containers.items())
            },
        })

    def _check_unit(self, unit_id: Optional[str]) -> None:
        if unit_id is not None and unit_id != self.unit.name:
            raise RuntimeFailure(f"supervisor manages unit {self.unit.name}, not {unit_id}")

    def _runner(self, instance: ContainerInstance) -> ProcessRunner:
        runner = self._runners.get(instance.id)
        if runner is None:
            runner = ProcessRunner(instance.service, instance.log_path or None)
            if instance.pid is not None:
                runner.attach(instance.pid, instance.process_started)
            self._runners[instance.id] = runner
        return runner

    def _process_alive(self, instance: ContainerInstance) -> bool:
        return instance.pid is not None and self._runner(instance).is_running()

    def is_container_alive(self, container_id: str) -> bool:
        """
        True if the container is running. Used by the fabric for resolution.
        """
        for instance in self.containers.values():
            if instance.id == container_id:
                return instance.state == ContainerState.RUNNING and self._process_alive(instance)
        return False

    # -- create ----------------------------------------------------------------

    def create(self, descriptor: ServiceDescriptor, image: Image, handle: NetworkHandle) -> ContainerInstance:
        """
        Instantiates an image for a service, leaving the container ``CREATED``.

        :param descriptor: The service.
        :param image: The image to instantiate.
        :param handle: The unit's network fabric.
        :return: The new container.
        :raises ConfigError: If the environment or volumes cannot be materialized.
        :raises NetworkError: If a template references a service that is not running.
        :raises RuntimeFailure: If the root filesystem cannot be prepared.
        """
        name = descriptor.name
        self.images[name] = image
        instance = ContainerInstance(
            id=secrets.token_hex(6), unit=self.unit.name, service=name, image=image.reference
        )
        container_dir = os.path.join(self.containers_dir, instance.id)
        rootfs = os.path.join(container_dir, "rootfs")
        logger.info("[%s] Creating container %s from %s", name, instance.id, image.reference)

        try:
            if not os.path.isdir(image.rootfs_path):
                raise RuntimeFailure(f"image {image.reference} has no root filesystem", service=name)
            shutil.copytree(image.rootfs_path, rootfs, symlinks=True)

            instance.address = self.fabric.attach(handle, instance.id, name, aliases=[instance.id])
            config = self.injector.materialize(descriptor, handle)

            working_dir = descriptor.working_dir or image.config.working_dir or "/"
            for binding in config.volumes:
                self.volumes.mount(binding, rootfs, working_dir, service=name)

            command = self.entrypoints.resolve(descriptor, image.config)
            if not command:
                raise ConfigError("no command specified by the service or its image", service=name)

            instance.command = self._translate(command, rootfs)
            instance.workdir = self.volumes.resolve_target(working_dir, rootfs)
            instance.rootfs = rootfs
            instance.log_path = os.path.join(container_dir, "container.log")
            instance.env = dict(config.env, CONVOY_ROOTFS=rootfs)
            instance.volumes = config.volumes
        except (ConvoyError, OSError) as e:
            self.fabric.detach(handle, name, instance.id)
            shutil.rmtree(container_dir, ignore_errors=True)
            if isinstance(e, OSError):
                raise RuntimeFailure(f"cannot prepare container root: {e}", service=name) from e
            raise

        instance.transition(ContainerState.CREATED)
        self.containers[name] = instance
        self._save_state()
        return instance

    @staticmethod
    def _translate(command: List[str], rootfs: str) -> List[str]:
        """
        Maps absolute container paths in a command onto the container root, where
        the file exists there.
        """
        translated = []
        for arg in command:
            if arg.startswith('/'):
                candidate = os.path.join(rootfs, arg.lstrip('/'))
                if os.path.exists(candidate):
                    arg = candidate
            translated.append(arg)
        return translated

    # -- start -----------------------------------------------------------------

    def start(self,
              layers: List[List[str]],
              services: Optional[Mapping[str, ServiceDescriptor]] = None,
              images: Optional[Mapping[str, Image]] = None,
              cancel: Optional[threading.Event] = None,
              build_errors: Optional[Mapping[str, ConvoyError]] = None) -> StartReport:
        """
        Creates and starts services one layer at a time.

        Every process of a layer is launched before any of them is waited on. A layer
        completes once each of its containers is ``RUNNING`` or ``FAILED``. Services
        depending on a failure are skipped and stay ``PENDING``.

        :param layers: Startup layers, as produced by the dependency scheduler.
        :param services: Descriptors by name, defaults to the unit's.
        :param images: Image per service; updates the supervisor's own.
        :param cancel: Set from another thread to abort the start.
        :param build_errors: Services whose image could not be produced.
        :return: The outcome of every service in ``layers``.
        """
        services = services if services is not None else self.unit.services
        self.images.update(images or {})
        report = StartReport()
        blocked: Dict[str, str] = {}

        for name, error in (build_errors or {}).items():
            report.record(ServiceOutcome(name, ContainerState.FAILED, str(error), error=error))
            self._block_dependents(name, blocked)

        handle = self.fabric.ensure(self.unit.name)
        try:
            for layer in layers:
                if cancel is not None and cancel.is_set():
                    raise KeyboardInterrupt
                starting = self._start_layer(layer, services, handle, report, blocked)
                self._await_layer(starting, services, report, blocked, cancel)
        except KeyboardInterrupt:
            report.cancelled = True
            self._cancel(report)
            for layer in layers:
                for name in layer:
                    if name in report.outcomes:
                        continue
                    instance = self.containers.get(name)
                    if instance is not None and instance.state == ContainerState.RUNNING:
                        report.record(ServiceOutcome(name, instance.state, f"pid {instance.pid}, {instance.address}"))
                    else:
                        report.record(ServiceOutcome(name, ContainerState.PENDING, "cancelled", skipped=True))
        finally:
            self._save_state()
        return report

    def _block_dependents(self, name: str, blocked: Dict[str, str]) -> None:
        for dependent in self.scheduler.dependents_of(self.unit.services, name):
            blocked.setdefault(dependent, name)

    def _start_layer(self,
                     layer: List[str],
                     services: Mapping[str, ServiceDescriptor],
                     handle: NetworkHandle,
                     report: StartReport,
                     blocked: Dict[str, str]) -> List[ContainerInstance]:
        created = []
        for name in layer:
            if name in report.outcomes:
                continue
            if name in blocked:
                logger.warning("[%s] Not starting: dependency %s failed", name, blocked[name])
                report.record(ServiceOutcome(
                    name, ContainerState.PENDING, f"dependency {blocked[name]} failed", skipped=True
                ))
                continue

            image = self.images.get(name)
            existing = self.containers.get(name)
            if (existing is not None and image is not None
                    and existing.state == ContainerState.RUNNING
                    and existing.image == image.reference
                    and self._process_alive(existing)):
                report.record(ServiceOutcome(name, ContainerState.RUNNING, "up to date"))
                continue
            if existing is not None and existing.state != ContainerState.REMOVED:
                logger.info("[%s] Recreating container %s", name, existing.id)
                self._remove_one(existing, handle)

            try:
                if image is None:
                    raise RuntimeFailure("no image available", service=name)
                created.append(self.create(services[name], image, handle))
            except ConvoyError as e:
                logger.error("[%s] %s", name, e.cause)
                report.record(ServiceOutcome(name, ContainerState.FAILED, str(e), error=e))
                self._block_dependents(name, blocked)

        for instance in created:
            self._launch(instance, services[instance.service])
        return created

    def _launch(self, instance: ContainerInstance, descriptor: ServiceDescriptor) -> None:
        instance.transition(ContainerState.STARTING)
        try:
            instance.ports = self._plan_ports(descriptor)
        except RuntimeFailure as e:
            self._fail(instance, e.cause)
            return

        runner = ProcessRunner(instance.service, instance.log_path)
        try:
            instance.pid = runner.start(instance.command, instance.env, instance.workdir)
        except OSError as e:
            self._fail(instance, f"cannot execute {instance.command[0]}: {e.strerror or e}")
            return
        instance.process_started = runner.create_time
        self._runners[instance.id] = runner

    def _plan_ports(self, descriptor: ServiceDescriptor) -> List[PortBinding]:
        bindings = []
        for mapping in descriptor.ports:
            if mapping.protocol != "tcp":
                logger.warning("[%s] Only tcp ports can be published, ignoring %d/%s",
                               descriptor.name, mapping.container_port, mapping.protocol)
                continue
            host_port = mapping.host_port
            if host_port is None:
                host_port = get_free_port(mapping.host_ip)
            elif not is_port_free(host_port, mapping.host_ip):
                raise RuntimeFailure(f"host port {mapping.host_ip}:{host_port} is already in use",
                                     service=descriptor.name)
            bindings.append(PortBinding(
                host_ip=mapping.host_ip, host_port=host_port, container_port=mapping.container_port
            ))
        return bindings

    def _await_layer(self,
                     starting: List[ContainerInstance],
                     services: Mapping[str, ServiceDescriptor],
                     report: StartReport,
                     blocked: Dict[str, str],
                     cancel: Optional[threading.Event]) -> None:
        trackers = {
            inst.id: ProbeTracker(probe_for(services[inst.service].health_check, self.probes, inst.service))
            for inst in starting
        }
        pending = [inst for inst in starting if inst.state == ContainerState.STARTING]
        while pending:
            if cancel is not None and cancel.is_set():
                raise KeyboardInterrupt
            for inst in pending:
                self._observe(inst, trackers[inst.id])
            pending = [inst for inst in pending if inst.state == ContainerState.STARTING]
            if pending:
                time.sleep(self.settings.poll_interval)

        for inst in starting:
            if inst.state == ContainerState.RUNNING:
                report.record(ServiceOutcome(inst.service, inst.state, f"pid {inst.pid}, {inst.address}"))
            else:
                error = RuntimeFailure(inst.error or "failed", service=inst.service, exit_status=inst.exit_code)
                detail = inst.error or "failed"
                tail = _tail(inst.log_path)
                if tail:
                    detail += " | " + tail[-1]
                report.record(ServiceOutcome(inst.service, inst.state, detail, error=error))
                self._block_dependents(inst.service, blocked)
        self._save_state()

    def _observe(self, instance: ContainerInstance, tracker: ProbeTracker) -> None:
        """
        Advances one starting container towards ``RUNNING`` or ``FAILED``.
        """
        runner = self._runner(instance)
        if not runner.is_running():
            code = runner.get_exit_code()
            self._fail(instance, f"exited with code {code} while starting", exit_code=code)
            return

        now = time.monotonic()
        elapsed = now - tracker.started
        probe = tracker.probe
        if probe is None:
            if elapsed >= self.settings.start_grace:
                self._mark_running(instance)
            return

        if now >= tracker.next_run:
            result = probe(instance)
            tracker.next_run = now + probe.interval
            if result.success:
                self._mark_running(instance)
                return
            tracker.last_output = result.output

        budget = min(probe.budget, self.settings.start_timeout)
        if elapsed > budget:
            message = f"not healthy after {budget:g}s"
            if tracker.last_output:
                message += f": {tracker.last_output.strip()}"
            self._fail(instance, message)

    def _mark_running(self, instance: ContainerInstance) -> None:
        instance.transition(ContainerState.RUNNING)
        logger.info("[%s] Running (pid %s, %s)", instance.service, instance.pid, instance.address)
        try:
            self._publish(instance)
        except RuntimeFailure as e:
            self._fail(instance, e.cause)

    def _publish(self, instance: ContainerInstance) -> None:
        """
        Starts one forwarder per published port and waits for it to listen.
        """
        log_file = os.path.join(os.path.dirname(instance.log_path), "forwarder.log")
        for binding in instance.ports:
            runner = ProcessRunner(f"{instance.service}:{binding.host_port}", log_file)
            command = forwarder_command(
                (binding.host_ip, binding.host_port), (instance.address, binding.container_port)
            )
            try:
                binding.forwarder_pid = runner.start(command, dict(os.environ))
            except OSError as e:
                raise RuntimeFailure(f"cannot start port forwarder: {e}", service=instance.service)
            binding.forwarder_started = runner.create_time

            probe_host = "127.0.0.1" if binding.host_ip in ("0.0.0.0", "") else binding.host_ip
            deadline = time.monotonic() + PUBLISH_TIMEOUT
            while not is_listening(probe_host, binding.host_port):
                if not runner.is_running() or time.monotonic() > deadline:
                    runner.stop(timeout=1)
                    raise RuntimeFailure(
                        f"cannot publish {binding.host_ip}:{binding.host_port}", service=instance.service
                    )
                time.sleep(self.settings.poll_interval)
            logger.info("[%s] Published %s:%d -> %d", instance.service,
                        binding.host_ip, binding.host_port, binding.container_port)

    def _unpublish(self, instance: ContainerInstance) -> None:
        for binding in instance.ports:
            if binding.forwarder_pid is None:
                continue
            runner = ProcessRunner(f"{instance.service}:{binding.host_port}")
            runner.attach(binding.forwarder_pid, binding.forwarder_started)
            runner.stop(timeout=1)
            binding.forwarder_pid = None
            binding.forwarder_started = None

    def _fail(self, instance: ContainerInstance, message: str, exit_code: Optional[int] = None) -> None:
        logger.error("[%s] %s", instance.service, message)
        runner = self._runner(instance)
        if instance.pid is not None and runner.is_running():
            runner.stop(timeout=self.settings.stop_timeout)
        if exit_code is None and instance.pid is not None:
            exit_code = runner.get_exit_code()
        self._unpublish(instance)
        instance.error = message
        instance.exit_code = exit_code
        instance.transition(ContainerState.FAILED)

    def _cancel(self, report: StartReport) -> None:
        """
        Stops every container still starting. Running ones are left alone.
        """
        for name, instance in self.containers.items():
            if instance.state != ContainerState.STARTING:
                continue
            logger.warning("[%s] Start cancelled", name)
            self._stop_one(instance)
            report.record(ServiceOutcome(name, instance.state, "cancelled"))

    # -- stop / remove ---------------------------------------------------------

    def _graph(self, names: Iterable[str]) -> Dict[str, List[str]]:
        graph = {}
        for name in names:
            descriptor = self.unit.services.get(name)
            graph[name] = list(descriptor.depends_on) if descriptor is not None else []
        return graph

    def _selected(self, services: Optional[Iterable[str]]) -> List[str]:
        names = set(self.containers) if services is None else set(services) & set(self.containers)
        return self.scheduler.shutdown_order(self._graph(names))

    def _stop_one(self, instance: ContainerInstance) -> None:
        # a STOPPING record is left behind by an interrupted stop; finish it
        if instance.state != ContainerState.STOPPING:
            instance.transition(ContainerState.STOPPING)
            self._save_state()
        descriptor = self.unit.services.get(instance.service)
        timeout = self.settings.stop_timeout
        if descriptor is not None and descriptor.stop_grace_period is not None:
            timeout = descriptor.stop_grace_period
        runner = self._runner(instance)
        forced = runner.stop(timeout=timeout)
        self._unpublish(instance)
        instance.exit_code = runner.get_exit_code()
        if forced:
            instance.error = f"killed after {timeout:g}s"
        instance.transition(ContainerState.STOPPED)
        logger.info("[%s] Stopped", instance.service)

    def stop(self, unit_id: Optional[str] = None, services: Optional[Iterable[str]] = None) -> List[str]:
        """
        Stops running containers, dependents before their dependencies.

        :param unit_id: Must be this supervisor's unit when given.
        :param services: Restricts the stop to these services.
        :return: The services that were stopped.
        """
        self._check_unit(unit_id)
        stopped = []
        for name in self._selected(services):
            instance = self.containers[name]
            if instance.state in STOPPABLE:
                self._stop_one(instance)
                stopped.append(name)
            elif instance.state == ContainerState.FAILED:
                self._unpublish(instance)
        self._save_state()
        return stopped

    def _remove_one(self, instance: ContainerInstance, handle: Optional[NetworkHandle]) -> None:
        if instance.state in STOPPABLE:
            self._stop_one(instance)
        elif instance.state == ContainerState.FAILED:
            self._unpublish(instance)
        instance.transition(ContainerState.REMOVED)
        logger.info("[%s] Removing container %s", instance.service, instance.id)
        shutil.rmtree(os.path.join(self.containers_dir, instance.id), ignore_errors=True)
        if handle is not None:
            self.fabric.detach(handle, instance.service, instance.id)
        self._runners.pop(instance.id, None)

    def remove(self, unit_id: Optional[str] = None, services: Optional[Iterable[str]] = None) -> List[str]:
        """
        Removes containers, stopping them first if needed. The unit's network is torn
        down once no container is left on it.

        :return: The services whose container was removed.
        """
        self._check_unit(unit_id)
        handle = self.fabric.load(self.unit.name)
        removed = []
        for name in self._selected(services):
            instance = self.containers[name]
            if instance.state == ContainerState.REMOVED:
                continue
            self._remove_one(instance, handle)
            removed.append(name)

        if handle is not None and all(
            inst.state == ContainerState.REMOVED for inst in self.containers.values()
        ):
            self.fabric.teardown(handle)
        self._save_state()
        return removed

    # -- inspection ------------------------------------------------------------

    def refresh(self) -> None:
        """
        Marks containers whose process has died as ``FAILED``.
        """
        changed = False
        for instance in self.containers.values():
            if instance.is_active and not self._process_alive(instance):
                code = self._runner(instance).get_exit_code()
                if code is None:
                    message = "process is gone"
                else:
                    message = f"exited with code {code}"
                self._fail(instance, message, exit_code=code)
                changed = True
        if changed:
            self._save_state()

    def status(self, unit_id: Optional[str] = None) -> Dict[str, ContainerState]:
        """
        Current state of every service of the unit, plus leftover containers of
        services no longer declared.
        """
        self._check_unit(unit_id)
        self.refresh()
        states = {name: ContainerState.PENDING for name in self.unit.services}
        for name, instance in self.containers.items():
            states[name] = instance.state
        return dict(sorted(states.items()))

    def _container(self, service: str) -> ContainerInstance:
        instance = self.containers.get(service)
        if instance is None or instance.state == ContainerState.REMOVED:
            raise RuntimeFailure("no container", service=service)
        return instance

    def logs(self, service: str, follow: bool = True, from_start: bool = False) -> Iterator[str]:
        """
        A lazy stream of a container's output lines.

        While the container is alive the stream waits for more; it ends once the
        container has stopped. Each call gets its own independent stream.

        :raises RuntimeFailure: If the service has no container.
        """
        instance = self._container(service)
        if follow:
            def alive() -> bool:
                return self._process_alive(instance)
        else:
            def alive() -> bool:
                return False
        return follow_log(instance.log_path, alive, from_start, self.settings.poll_interval)

    def follower(self, service: str, follow: bool = True, from_start: bool = True) -> LogFollower:
        """A follower for one service, for interleaving several logs."""
        instance = self._container(service)
        if follow:
            return LogFollower(instance.log_path, lambda: self._process_alive(instance), from_start)
        return LogFollower(instance.log_path, lambda: False, from_start)
