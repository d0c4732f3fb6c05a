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
Parsers for compose-style orchestration unit descriptors.
"""
import os
import re
import shlex
from typing import Dict, Any, List, Optional

import pydantic
import yaml
from dotenv import dotenv_values

from ..errors import ValidationError
from ..MODELS.orchestration_config import OrchestrationUnit
from ..MODELS.service_definition import (
    BuildSpec,
    HealthCheck,
    PortMapping,
    ServiceDescriptor,
    VolumeMount,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator, InterpolationError

DEFAULT_FILENAMES = (
    "convoy.yml",
    "convoy.yaml",
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

_DURATION_RE = re.compile(r'(\d+(?:\.\d+)?)(ms|us|h|m|s)')
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}


def find_descriptor(directory: str = ".") -> Optional[str]:
    """
    Returns the first default descriptor file present in ``directory``.
    """
    for name in DEFAULT_FILENAMES:
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            return path
    return None


def normalize_project_name(name: str) -> str:
    """
    Lowercases and strips a unit name down to [a-z0-9_-].
    """
    normalized = re.sub(r'[^a-z0-9_-]', '', name.lower())
    return normalized.lstrip('_-') or "default"


def parse_duration(value: Any) -> float:
    """
    Parses compose durations such as ``30s``, ``1m30s`` or ``500ms`` into seconds.
    Plain numbers are taken as seconds.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_RE.findall(text)
    if not parts or ''.join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration {value!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


class ComposeParser:
    """
    Parser for convoy.yml / docker-compose.yml files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = context

    def parse(self, compose_path: str, project_name: Optional[str] = None) -> OrchestrationUnit:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :param project_name: Explicit unit name, overriding the file and directory name.
        :return: Parsed unit.
        """
        compose_path = os.path.abspath(compose_path)
        try:
            with open(compose_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ValidationError(f"cannot read descriptor {compose_path}: {e.strerror}")
        return self.parse_from_string(
            content,
            base_dir=os.path.dirname(compose_path),
            project_name=project_name,
            source_path=compose_path,
        )

    def parse_from_string(self,
                          content: str,
                          base_dir: str = ".",
                          project_name: Optional[str] = None,
                          source_path: str = "") -> OrchestrationUnit:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory relative paths are resolved against.
        :param project_name: Explicit unit name.
        :param source_path: Where the content came from, for reporting.
        :return: Parsed unit.
        """
        base_dir = os.path.abspath(base_dir)
        context = self._interpolation_context(base_dir)

        # Interpolate variables before parsing YAML
        try:
            content = EnvironmentInterpolator.interpolate(content, context)
        except InterpolationError as e:
            raise ValidationError(f"interpolation failed: {e.args[0]}")

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValidationError(f"descriptor is not valid YAML: {e}")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("descriptor must be a mapping at the top level")

        raw_services = data.get('services')
        if not isinstance(raw_services, dict) or not raw_services:
            raise ValidationError("descriptor declares no services")

        services = {}
        for name, spec in raw_services.items():
            name = str(name)
            if spec is None:
                spec = {}
            if not isinstance(spec, dict):
                raise ValidationError("service definition must be a mapping", service=name)
            try:
                services[name] = self._parse_service(name, spec)
            except (ValueError, TypeError, KeyError) as e:
                raise ValidationError(self._describe(e), service=name)

        name = project_name or data.get('name') or os.path.basename(base_dir)
        return OrchestrationUnit(
            name=normalize_project_name(str(name)),
            base_dir=base_dir,
            source_path=source_path,
            services=services,
            networks=self._keys(data.get('networks')),
            volumes=self._keys(data.get('volumes')),
        )

    def _interpolation_context(self, base_dir: str) -> Dict[str, str]:
        """
        The process environment wins over a .env file next to the descriptor.
        """
        if self.context is not None:
            return dict(self.context)
        context: Dict[str, str] = {}
        env_file = os.path.join(base_dir, ".env")
        if os.path.isfile(env_file):
            context.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        context.update(os.environ)
        return context

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDescriptor:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDescriptor instance.
        """
        # Build context
        build = None
        raw_build = spec.get('build')
        if isinstance(raw_build, str):
            build = BuildSpec(context=raw_build)
        elif isinstance(raw_build, dict):
            build = BuildSpec(
                context=str(raw_build.get('context', '.')),
                dockerfile=str(raw_build.get('dockerfile', 'Dockerfile')),
                args=self._to_mapping(raw_build.get('args')),
            )
        elif raw_build is not None:
            raise ValueError("build must be a path or a mapping")

        # Volumes
        volumes = [self._parse_volume(name, v) for v in self._to_list_raw(spec.get('volumes'))]

        # Ports
        ports = []
        for p in self._to_list_raw(spec.get('ports')):
            ports.extend(self._parse_port(p))

        expose = [int(str(p).split('/')[0]) for p in self._to_list_raw(spec.get('expose'))]

        # Environment
        environment = self._to_mapping(spec.get('environment'), fill_from_context=True)

        # Dependencies
        raw_deps = spec.get('depends_on') or []
        if isinstance(raw_deps, dict):
            depends_on = [str(d) for d in raw_deps.keys()]
        elif isinstance(raw_deps, (list, tuple)):
            depends_on = [str(d) for d in raw_deps]
        else:
            raise ValueError("depends_on must be a list or a mapping")

        # Health check
        health_check = None
        raw_hc = spec.get('healthcheck')
        if isinstance(raw_hc, dict) and not raw_hc.get('disable'):
            test = raw_hc.get('test')
            if isinstance(test, str):
                test = ["CMD-SHELL", test]
            if test:
                health_check = HealthCheck(
                    test=[str(t) for t in test],
                    interval=parse_duration(raw_hc.get('interval', 1)),
                    timeout=parse_duration(raw_hc.get('timeout', 5)),
                    retries=int(raw_hc.get('retries', 3)),
                    start_period=parse_duration(raw_hc.get('start_period', 0)),
                )

        stop_grace = spec.get('stop_grace_period')

        try:
            return ServiceDescriptor(
                name=name,
                build=build,
                image=str(spec['image']) if spec.get('image') else None,
                command=self._to_argv(spec.get('command')),
                entrypoint=self._to_argv(spec.get('entrypoint')),
                working_dir=spec.get('working_dir'),
                environment=environment,
                env_files=[str(f) for f in self._to_list_raw(spec.get('env_file'))],
                ports=ports,
                expose=expose,
                networks=self._keys(spec.get('networks')),
                volumes=volumes,
                depends_on=depends_on,
                health_check=health_check,
                stop_grace_period=parse_duration(stop_grace) if stop_grace is not None else None,
                labels=self._to_mapping(spec.get('labels')),
            )
        except pydantic.ValidationError as e:
            raise ValueError(self._describe(e))

    def _parse_port(self, p: Any) -> List[PortMapping]:
        """
        Parses short (``[ip:][host:]container[/proto]``) and long port syntax.
        """
        if isinstance(p, dict):
            return [PortMapping(
                container_port=int(p['target']),
                host_port=int(p['published']) if p.get('published') not in (None, '') else None,
                host_ip=str(p.get('host_ip') or '0.0.0.0'),
                protocol=str(p.get('protocol', 'tcp')),
            )]
        if isinstance(p, bool) or not isinstance(p, (int, str)):
            raise ValueError(f"invalid port specification {p!r}")

        text = str(p)
        protocol = 'tcp'
        if '/' in text:
            text, protocol = text.rsplit('/', 1)
        parts = text.rsplit(':', 2)
        host_ip = '0.0.0.0'
        host = None
        if len(parts) == 3:
            host_ip, host, container = parts
            host_ip = host_ip or '0.0.0.0'
        elif len(parts) == 2:
            host, container = parts
        else:
            container = parts[0]
        host_port = int(host) if host else None
        return [PortMapping(container_port=int(container), host_port=host_port,
                            host_ip=host_ip, protocol=protocol)]

    def _parse_volume(self, service: str, v: Any) -> VolumeMount:
        """
        Parses ``source:target[:ro]``, a bare anonymous target, or the long syntax.
        """
        if isinstance(v, dict):
            return VolumeMount(
                source=str(v.get('source') or self._anonymous_volume(service, str(v['target']))),
                target=str(v['target']),
                read_only=bool(v.get('read_only', False)),
            )
        parts = str(v).split(':')
        if len(parts) == 1:
            return VolumeMount(source=self._anonymous_volume(service, parts[0]), target=parts[0])
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only=('ro' in parts[2].split(',')))
        raise ValueError(f"invalid volume specification {v!r}")

    def _anonymous_volume(self, service: str, target: str) -> str:
        return f"{service}_" + (re.sub(r'[^A-Za-z0-9]+', '_', target).strip('_') or "data")

    def _to_mapping(self, val: Any, fill_from_context: bool = False) -> Dict[str, str]:
        """
        Normalizes list (``KEY=VALUE``) and mapping forms into a string mapping.
        Entries without a value are taken from the interpolation context when asked to.
        """
        result: Dict[str, str] = {}
        if val is None:
            return result
        if isinstance(val, dict):
            items = list(val.items())
        elif isinstance(val, (list, tuple)):
            items = []
            for entry in val:
                if '=' in str(entry):
                    k, v = str(entry).split('=', 1)
                    items.append((k, v))
                else:
                    items.append((str(entry), None))
        else:
            raise ValueError("expected a list or a mapping")

        context = self.context if self.context is not None else os.environ
        for key, value in items:
            key = str(key)
            if value is None:
                if fill_from_context and key in context:
                    result[key] = context[key]
                continue
            if isinstance(value, bool):
                value = 'true' if value else 'false'
            result[key] = str(value)
        return result

    def _to_argv(self, val: Any) -> List[str]:
        """
        Commands given as a string are split the way a shell would.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]

    def _to_list_raw(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, int, dict)):
            return [val]
        return list(val)

    def _keys(self, val: Any) -> List[str]:
        if not val:
            return []
        if isinstance(val, dict):
            return [str(k) for k in val.keys()]
        return [str(v) for v in val]

    @staticmethod
    def _describe(error: Exception) -> str:
        if isinstance(error, pydantic.ValidationError):
            first = error.errors()[0]
            loc = ".".join(str(part) for part in first.get('loc', ()))
            return f"{loc}: {first.get('msg')}" if loc else str(first.get('msg'))
        if isinstance(error, KeyError):
            return f"missing key {error.args[0]!r}"
        return str(error)
