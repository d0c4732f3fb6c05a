"""
Volume management for containers: named volumes, bind sources and mounting into a
container's root filesystem.
"""
import logging
import os
import shutil
from typing import List, Optional

from ..errors import ConfigError
from ..MODELS.container_instance import VolumeBinding
from ..MODELS.service_definition import VolumeMount

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Manages volume mappings by creating symlinks (or copies) inside container roots.
    """
    def __init__(self, base_dir: str, volumes_root: str, unit: str):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative bind paths.
        :param volumes_root: The root directory for named volume storage.
        :param unit: Named volumes are scoped to this unit.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(volumes_root)
        self.unit = unit

    def resolve_source(self, mount: VolumeMount) -> str:
        """
        Resolves the source path of a volume.

        :param mount: The declared mount.
        :return: The absolute path to the source.
        """
        if mount.is_named:
            return os.path.join(self.volumes_root, f"{self.unit}_{mount.source}")
        source = os.path.expanduser(mount.source)
        return os.path.abspath(os.path.join(self.base_dir, source))

    def is_creatable(self, path: str) -> bool:
        """
        True if the nearest existing ancestor of ``path`` is a writable directory.
        """
        parent = path
        while not os.path.exists(parent):
            next_parent = os.path.dirname(parent)
            if next_parent == parent:
                return False
            parent = next_parent
        return os.path.isdir(parent) and os.access(parent, os.W_OK | os.X_OK)

    def prepare(self, mount: VolumeMount, service: Optional[str] = None) -> VolumeBinding:
        """
        Validates a mount and makes sure its host side exists.

        :raises ConfigError: If the source neither exists nor can be created.
        """
        source = self.resolve_source(mount)
        if not os.path.exists(source):
            if not self.is_creatable(source):
                raise ConfigError(f"volume source {source} does not exist and cannot be created",
                                  service=service)
            try:
                os.makedirs(source, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"cannot create volume source {source}: {e.strerror}", service=service)
        return VolumeBinding(source=source, target=mount.target, read_only=mount.read_only)

    def resolve_target(self, target: str, rootfs: str, working_dir: str = "/") -> str:
        """
        Resolves the target path of a volume inside a container root.

        :param target: The target path inside the container.
        :param rootfs: The container's root filesystem directory.
        :param working_dir: The container's working directory, for relative targets.
        :return: The absolute path to the target.
        """
        if not target.startswith('/'):
            target = working_dir.rstrip('/') + '/' + target
        return os.path.normpath(os.path.join(rootfs, target.lstrip('/\\')))

    def mount(self, binding: VolumeBinding, rootfs: str, working_dir: str = "/",
              service: Optional[str] = None) -> str:
        """
        Links a prepared binding into a container root.

        :return: The path inside the root that now points at the source.
        """
        target_path = self.resolve_target(binding.target, rootfs, working_dir)
        if os.path.commonpath([target_path, os.path.abspath(rootfs)]) != os.path.abspath(rootfs):
            raise ConfigError(f"volume target {binding.target} escapes the container root", service=service)

        logger.info("[%s] Mapping volume: %s -> %s", service or "?", binding.source, binding.target)
        if binding.read_only:
            logger.debug("[%s] read-only is not enforced for %s", service or "?", binding.target)

        # Ensure target parent directory exists
        os.makedirs(os.path.dirname(target_path), exist_ok=True)

        if os.path.lexists(target_path):
            if os.path.islink(target_path):
                if os.path.realpath(target_path) == os.path.realpath(binding.source):
                    return target_path
                os.unlink(target_path)
            elif os.path.isdir(target_path):
                # image content at the mount point is shadowed, like a Docker mount
                shutil.rmtree(target_path)
            else:
                os.remove(target_path)

        try:
            os.symlink(binding.source, target_path, target_is_directory=os.path.isdir(binding.source))
        except (OSError, NotImplementedError):
            # Fallback to copy if symlink fails
            logger.warning("[%s] Symlink failed for %s, falling back to copy", service or "?", target_path)
            if os.path.isdir(binding.source):
                shutil.copytree(binding.source, target_path, dirs_exist_ok=True)
            else:
                shutil.copy2(binding.source, target_path)
        return target_path

    def list_volumes(self) -> List[str]:
        """
        Named volumes of this unit currently on disk.
        """
        if not os.path.isdir(self.volumes_root):
            return []
        prefix = f"{self.unit}_"
        return sorted(
            name[len(prefix):] for name in os.listdir(self.volumes_root) if name.startswith(prefix)
        )

    def remove_volume(self, name: str) -> bool:
        """
        Deletes one named volume and its data.
        """
        path = os.path.join(self.volumes_root, f"{self.unit}_{name}")
        if not os.path.exists(path):
            return False
        logger.info("Removing volume %s_%s", self.unit, name)
        shutil.rmtree(path)
        return True

    def remove_all(self) -> List[str]:
        """
        Deletes every named volume of the unit. Bind-mounted host paths are left alone.
        """
        removed = []
        for name in self.list_volumes():
            if self.remove_volume(name):
                removed.append(name)
        return removed
