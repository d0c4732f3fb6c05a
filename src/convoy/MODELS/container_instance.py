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
Container instances and the lifecycle state machine they move through.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from ..errors import InvalidTransition


class ContainerState(str, Enum):
    """Lifecycle state of one container instance."""

    PENDING = "pending"
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REMOVED = "removed"
    FAILED = "failed"


TRANSITIONS: Dict[ContainerState, frozenset] = {
    ContainerState.PENDING: frozenset({ContainerState.CREATED}),
    ContainerState.CREATED: frozenset({ContainerState.STARTING, ContainerState.REMOVED}),
    ContainerState.STARTING: frozenset(
        {ContainerState.RUNNING, ContainerState.FAILED, ContainerState.STOPPING}
    ),
    ContainerState.RUNNING: frozenset({ContainerState.STOPPING, ContainerState.FAILED}),
    ContainerState.STOPPING: frozenset({ContainerState.STOPPED}),
    ContainerState.STOPPED: frozenset({ContainerState.REMOVED}),
    ContainerState.FAILED: frozenset({ContainerState.REMOVED}),
    ContainerState.REMOVED: frozenset(),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class PortBinding(BaseModel):
    """A published port as actually bound on the host."""

    host_ip: str
    host_port: int
    container_port: int
    forwarder_pid: Optional[int] = None
    forwarder_started: Optional[float] = None


class VolumeBinding(BaseModel):
    """A materialized volume: absolute host path linked at a container path."""

    source: str
    target: str
    read_only: bool = False


class ContainerInstance(BaseModel):
    """
    One instantiation of an image for a service.
    """

    id: str
    unit: str
    service: str
    image: str = ""
    state: ContainerState = ContainerState.PENDING

    pid: Optional[int] = None
    process_started: Optional[float] = None
    address: Optional[str] = None
    command: List[str] = []
    workdir: str = ""
    rootfs: str = ""
    log_path: str = ""
    env: Dict[str, str] = {}
    volumes: List[VolumeBinding] = []
    ports: List[PortBinding] = []

    exit_code: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def transition(self, target: ContainerState) -> None:
        """
        Move to ``target``, refusing edges the state machine does not have.
        """
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"cannot move container {self.id} from {self.state.value} to {target.value}",
                service=self.service,
            )
        self.state = target
        if target == ContainerState.CREATED:
            self.created_at = _now()
        elif target == ContainerState.STARTING:
            self.started_at = _now()
        elif target in (ContainerState.STOPPED, ContainerState.FAILED):
            self.finished_at = _now()

    @property
    def is_active(self) -> bool:
        return self.state in (ContainerState.STARTING, ContainerState.RUNNING)
