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
Local image store.
Keeps built images on disk, indexed by reference, across orchestration runs.
"""

import logging
import shutil
from typing import Optional, List, Dict, Any, Iterable
from pathlib import Path

from ..MODELS.container_image import Image
from ..UTILS.state_files import read_json, write_json

logger = logging.getLogger(__name__)


class ImageStore:
    """
    Manages the built images of one state directory.
    Each repository has at most one current image; building again supersedes it.
    """

    def __init__(self, images_dir: str):
        """
        Initialize the image store.

        Args:
            images_dir: Directory holding image roots and the index.
        """
        self.images_dir = Path(images_dir)
        self.index_file = self.images_dir / "index.json"
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self._index = self._load_index()

    def _load_index(self) -> Dict[str, Any]:
        """Load the store index from disk."""
        data = read_json(str(self.index_file))
        if not isinstance(data, dict) or "images" not in data:
            return {"images": {}, "repositories": {}}
        return data

    def _save_index(self) -> None:
        """Save the store index to disk."""
        write_json(str(self.index_file), self._index)

    def image_dir(self, repository: str, fingerprint: str) -> Path:
        """Where an image with this fingerprint lives."""
        return self.images_dir / repository.replace("/", "_") / fingerprint

    def get(self, reference: str) -> Optional[Image]:
        """
        Get an image by reference. A bare repository name resolves to its current image.

        Args:
            reference: ``repo:tag`` or ``repo``

        Returns:
            Image if found, None otherwise
        """
        if reference not in self._index["images"]:
            reference = self._index["repositories"].get(reference, "")
        info = self._index["images"].get(reference)
        if info is None:
            return None

        image = Image(**info)
        # Verify the image still exists
        if not Path(image.rootfs_path).exists():
            self._forget(reference)
            self._save_index()
            return None
        return image

    def find(self, repository: str, fingerprint: str) -> Optional[Image]:
        """
        The current image of ``repository`` if it was built from ``fingerprint``.
        """
        image = self.get(repository)
        if image is not None and image.fingerprint == fingerprint:
            return image
        return None

    def add(self, image: Image) -> Image:
        """
        Register an image and make it current for its repository.
        The superseded image's files are deleted.
        """
        previous = self._index["repositories"].get(image.repository)
        if previous and previous != image.reference:
            logger.info("Superseding image %s with %s", previous, image.reference)
            self.remove(previous)

        image.size = self._calculate_dir_size(Path(image.rootfs_path))
        self._index["images"][image.reference] = image.model_dump()
        self._index["repositories"][image.repository] = image.reference
        self._save_index()
        return image

    def remove(self, reference: str) -> bool:
        """
        Remove an image from the store.

        Returns:
            True if removed, False if not found
        """
        info = self._index["images"].get(reference)
        if info is None:
            return False

        # Remove the image directory
        image_dir = Path(info["rootfs_path"]).parent
        if image_dir.exists():
            shutil.rmtree(image_dir)

        self._forget(reference)
        self._save_index()
        return True

    def list_images(self) -> List[Image]:
        """
        List all stored images.
        """
        images = []
        for reference in list(self._index["images"]):
            image = self.get(reference)
            if image is not None:
                images.append(image)
        return images

    def prune(self, keep: Iterable[str] = ()) -> Dict[str, int]:
        """
        Remove every image whose reference is not in ``keep``.

        Returns:
            Statistics about removed items
        """
        keep = set(keep)
        removed = 0
        freed_bytes = 0
        for reference, info in list(self._index["images"].items()):
            if reference in keep:
                continue
            size = info.get("size", 0)
            if self.remove(reference):
                removed += 1
                freed_bytes += size
        return {"removed_images": removed, "freed_bytes": freed_bytes}

    def _forget(self, reference: str) -> None:
        info = self._index["images"].pop(reference, None)
        if info and self._index["repositories"].get(info["repository"]) == reference:
            del self._index["repositories"][info["repository"]]

    def _calculate_dir_size(self, path: Path) -> int:
        """Calculate the total size of a directory."""
        total = 0
        if path.exists():
            for item in path.rglob("*"):
                if item.is_file() and not item.is_symlink():
                    total += item.stat().st_size
        return total
