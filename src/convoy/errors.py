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
Error taxonomy shared by every layer of the orchestrator.

Each error carries the offending service name (when there is one) and a
human readable cause. The CLI maps the error class to a process exit code,
one range per family.
"""
from typing import Optional, Sequence


class ConvoyError(Exception):
    """Base class for all orchestration errors."""

    exit_code = 1

    def __init__(self, cause: str, service: Optional[str] = None):
        super().__init__(cause)
        self.cause = cause
        self.service = service

    def __str__(self) -> str:
        if self.service:
            return f"{self.service}: {self.cause}"
        return self.cause


class ValidationError(ConvoyError):
    """The descriptor is malformed or inconsistent."""

    exit_code = 10


class CycleError(ValidationError):
    """The dependency graph contains a cycle."""

    def __init__(self, services: Sequence[str]):
        self.services = sorted(services)
        super().__init__(
            "dependency cycle among services: " + ", ".join(self.services),
            service=self.services[0] if self.services else None,
        )


class ConfigError(ConvoyError):
    """Environment or volume configuration could not be materialized."""

    exit_code = 10


class BuildError(ConvoyError):
    """Image construction failed."""

    exit_code = 20

    def __init__(
        self,
        cause: str,
        service: Optional[str] = None,
        exit_status: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(cause, service=service)
        self.exit_status = exit_status
        self.output = output


class NetworkError(ConvoyError):
    """An address could not be resolved on the fabric. Usually transient."""

    exit_code = 30


class RuntimeFailure(ConvoyError):
    """A container failed to reach or stay in the running state."""

    exit_code = 40

    def __init__(
        self, cause: str, service: Optional[str] = None, exit_status: Optional[int] = None
    ):
        super().__init__(cause, service=service)
        self.exit_status = exit_status


class InvalidTransition(RuntimeFailure):
    """A lifecycle transition not allowed by the container state machine."""
