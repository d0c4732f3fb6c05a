"""
Models for the orchestration unit as a whole.
"""
from typing import Dict, List
from pydantic import BaseModel, ConfigDict
from .service_definition import ServiceDescriptor


class OrchestrationUnit(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    base_dir: str
    source_path: str = ""
    services: Dict[str, ServiceDescriptor]
    networks: List[str] = []
    volumes: List[str] = []
