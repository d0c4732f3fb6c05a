"""
Static validation of a parsed orchestration unit.
"""
import os
import re
from typing import Dict, Optional, Tuple

from ..errors import ValidationError
from ..MODELS.orchestration_config import OrchestrationUnit
from ..RUNNERS.dependency_resolver import DependencyScheduler
from .compose_parser import ComposeParser, find_descriptor

SERVICE_NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')


class UnitValidator:
    """
    Rejects inconsistent units before anything on disk or in the runtime is touched.
    """
    def __init__(self, scheduler: Optional[DependencyScheduler] = None):
        self.scheduler = scheduler or DependencyScheduler()

    def validate(self, unit: OrchestrationUnit) -> OrchestrationUnit:
        """
        Checks names, the dependency graph, published host ports and build contexts.

        :param unit: The parsed unit.
        :return: The same unit, for chaining.
        :raises ValidationError: On the first inconsistency found.
        :raises CycleError: If the dependency graph has a cycle.
        """
        services = unit.services

        for name in sorted(services):
            if not SERVICE_NAME_RE.match(name):
                raise ValidationError(f"invalid service name {name!r}", service=name)

        for name in sorted(services):
            svc = services[name]
            for dep in svc.depends_on:
                if dep == name:
                    raise ValidationError("service depends on itself", service=name)
                if dep not in services:
                    raise ValidationError(f"depends on undeclared service {dep!r}", service=name)

        # Raises CycleError
        self.scheduler.schedule(services)

        self._check_ports(unit)

        for name in sorted(services):
            svc = services[name]
            if svc.build is None and not svc.image:
                raise ValidationError("service has neither a build context nor an image", service=name)
            if svc.build is not None:
                context = os.path.join(unit.base_dir, svc.build.context)
                if not os.path.isdir(context):
                    raise ValidationError(f"build context {context} does not exist", service=name)
                dockerfile = os.path.join(context, svc.build.dockerfile)
                if not os.path.isfile(dockerfile):
                    raise ValidationError(f"build descriptor {dockerfile} does not exist", service=name)

        return unit

    def _check_ports(self, unit: OrchestrationUnit) -> None:
        """
        A host port may be published once per protocol; 0.0.0.0 overlaps every address.
        """
        claimed: Dict[Tuple[int, str], Dict[str, str]] = {}
        for name in sorted(unit.services):
            for mapping in unit.services[name].ports:
                if mapping.host_port is None:
                    continue
                key = (mapping.host_port, mapping.protocol)
                owners = claimed.setdefault(key, {})
                for ip, owner in owners.items():
                    if ip == mapping.host_ip or '0.0.0.0' in (ip, mapping.host_ip):
                        raise ValidationError(
                            f"host port {mapping.host_port}/{mapping.protocol} is already published by {owner!r}",
                            service=name,
                        )
                owners[mapping.host_ip] = name


def load_unit(path: Optional[str] = None,
              project_name: Optional[str] = None,
              parser: Optional[ComposeParser] = None) -> OrchestrationUnit:
    """
    Parses and validates a descriptor. With no path the default file names are searched
    in the working directory.
    """
    if path is None:
        path = find_descriptor(".")
        if path is None:
            raise ValidationError("no descriptor file found in the current directory")
    unit = (parser or ComposeParser()).parse(path, project_name=project_name)
    return UnitValidator().validate(unit)
