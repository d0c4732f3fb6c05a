"""
Models representing built images and their runtime configuration.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field


class ImageConfig(BaseModel):
    """
    Runtime defaults recorded by the build: what a container of this image runs.
    """
    env: Dict[str, str] = {}
    working_dir: str = "/"
    cmd: List[str] = []
    entrypoint: List[str] = []
    exposed_ports: List[int] = []
    labels: Dict[str, str] = {}


class Image(BaseModel):
    """
    A built, runnable image. ``reference`` is ``<repository>:<tag>`` and the
    tag is derived from the build context fingerprint.
    """
    reference: str
    repository: str
    tag: str
    fingerprint: str
    service: Optional[str] = None
    rootfs_path: str
    config: ImageConfig = Field(default_factory=ImageConfig)
    created: str = ""
    size: int = 0
