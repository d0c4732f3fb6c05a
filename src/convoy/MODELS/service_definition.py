"""
Models for defining services: build contexts, published ports, mounts and health probes.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class BuildSpec(BaseModel):
    """
    Where and how a service's image is built.
    """
    model_config = ConfigDict(frozen=True)

    context: str
    dockerfile: str = "Dockerfile"
    args: Dict[str, str] = {}


class PortMapping(BaseModel):
    """
    A published port. ``host_port`` of None means "any free port".
    """
    model_config = ConfigDict(frozen=True)

    container_port: int = Field(gt=0, lt=65536)
    host_port: Optional[int] = Field(default=None, gt=0, lt=65536)
    host_ip: str = "0.0.0.0"
    protocol: str = "tcp"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path (or named volume) and a container path.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """Named volumes carry no path separator and do not start with a dot or ~."""
        return not (
            "/" in self.source
            or "\\" in self.source
            or self.source.startswith(".")
            or self.source.startswith("~")
        )


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    interval: float = 1.0
    timeout: float = 5.0
    retries: int = 3
    start_period: float = 0.0


class ServiceDescriptor(BaseModel):
    """
    The full definition of a single service, immutable once loaded.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    build: Optional[BuildSpec] = None
    image: Optional[str] = None

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    env_files: List[str] = []

    # Networking
    ports: List[PortMapping] = []
    expose: List[int] = []
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    depends_on: List[str] = []
    health_check: Optional[HealthCheck] = None
    stop_grace_period: Optional[float] = None

    # Metadata
    labels: Dict[str, str] = {}

    @field_validator("depends_on")
    @classmethod
    def _sorted_unique(cls, value: List[str]) -> List[str]:
        return sorted(set(value))

    def container_ports(self) -> List[int]:
        """
        Container ports in declaration order, published mappings first.
        """
        ports: List[int] = []
        for mapping in self.ports:
            if mapping.container_port not in ports:
                ports.append(mapping.container_port)
        for port in self.expose:
            if port not in ports:
                ports.append(port)
        return ports
