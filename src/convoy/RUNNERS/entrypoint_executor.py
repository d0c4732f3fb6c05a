"""
Utilities for resolving the full execution command for a container.
"""
from typing import List

from ..MODELS.container_image import ImageConfig
from ..MODELS.service_definition import ServiceDescriptor


class EntrypointExecutor:
    """
    Merges service overrides with the image's ENTRYPOINT and CMD according to Docker rules.
    """
    def get_full_command(self, entrypoint: List[str], cmd: List[str]) -> List[str]:
        """
        Combines entrypoint and cmd into a single command list.

        :param entrypoint: The ENTRYPOINT list.
        :param cmd: The CMD list.
        :return: The full command list.
        """
        # If ENTRYPOINT is defined, it's the executable. CMD becomes arguments.
        # If ENTRYPOINT is not defined, CMD is the executable + arguments.
        if entrypoint:
            return entrypoint + cmd
        return cmd

    def resolve(self, service: ServiceDescriptor, image: ImageConfig) -> List[str]:
        """
        The command a container of ``service`` runs.

        A service ``entrypoint`` replaces the image's and discards the image CMD;
        a service ``command`` replaces the image CMD.
        """
        if service.entrypoint:
            entrypoint = list(service.entrypoint)
            cmd = list(service.command)
        else:
            entrypoint = list(image.entrypoint)
            cmd = list(service.command) if service.command else list(image.cmd)
        return self.get_full_command(entrypoint, cmd)
