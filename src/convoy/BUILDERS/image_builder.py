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
Build resolution: turns a service's build context into a runnable image.

An image is a root filesystem directory plus an ImageConfig. The Dockerfile is
interpreted step by step: COPY/ADD populate the root filesystem from the context,
RUN steps are executed as external build commands inside it, and CMD, ENTRYPOINT,
ENV, WORKDIR and EXPOSE become the image's runtime defaults.
"""
import glob
import logging
import os
import posixpath
import shutil
import subprocess
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..errors import BuildError
from ..MODELS.container_image import Image, ImageConfig
from ..MODELS.dockerfile_ast import Instruction
from ..MODELS.orchestration_config import OrchestrationUnit
from ..MODELS.service_definition import ServiceDescriptor
from ..MODELS.settings import RuntimeSettings
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..RUNNERS.process_runner import base_environment
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .fingerprint import compute_fingerprint, is_ignored, read_ignore_patterns
from .image_store import ImageStore

logger = logging.getLogger(__name__)

IGNORED_INSTRUCTIONS = {"USER", "VOLUME", "SHELL", "HEALTHCHECK", "STOPSIGNAL", "ONBUILD", "MAINTAINER"}


class _Stage:
    """One FROM section of a (possibly multi-stage) build."""

    def __init__(self, rootfs: str, config: ImageConfig, name: Optional[str] = None):
        self.rootfs = rootfs
        self.config = config
        self.name = name


class BuildResolver:
    """
    Resolves ServiceDescriptors into Images, skipping the build when an image with the
    same context fingerprint already exists.
    """
    def __init__(self,
                 unit: OrchestrationUnit,
                 store: ImageStore,
                 settings: Optional[RuntimeSettings] = None):
        """
        Initializes the resolver.

        :param unit: The unit whose services are built.
        :param store: Where images are kept between runs.
        :param settings: Build timeout and friends.
        """
        self.unit = unit
        self.store = store
        self.settings = settings or RuntimeSettings()
        self.parser = DockerfileParser()

    def repository_for(self, descriptor: ServiceDescriptor) -> str:
        """
        The explicit image name if the service has one, else ``<unit>-<service>``.
        """
        if descriptor.image:
            return descriptor.image.split(':', 1)[0] if descriptor.build else descriptor.image
        return f"{self.unit.name}-{descriptor.name}".lower()

    def context_paths(self, descriptor: ServiceDescriptor):
        """Absolute context directory and build descriptor file."""
        context = os.path.abspath(os.path.join(self.unit.base_dir, descriptor.build.context))
        return context, os.path.join(context, descriptor.build.dockerfile)

    def fingerprint(self, descriptor: ServiceDescriptor) -> str:
        context, dockerfile = self.context_paths(descriptor)
        return compute_fingerprint(context, dockerfile, descriptor.build.args)

    def resolve(self, descriptor: ServiceDescriptor, force: bool = False) -> Image:
        """
        Returns the current image for a service, building it when needed.

        :param descriptor: The service.
        :param force: Build even if an image with the same fingerprint exists.
        :return: The image.
        :raises BuildError: If the image is missing or a build step fails.
        """
        name = descriptor.name
        if descriptor.build is None:
            image = self.store.get(descriptor.image)
            if image is None:
                raise BuildError(f"image {descriptor.image!r} not found in the local store", service=name)
            return image

        repository = self.repository_for(descriptor)
        try:
            fingerprint = self.fingerprint(descriptor)
        except OSError as e:
            raise BuildError(f"cannot read build context: {e}", service=name)

        if not force:
            existing = self.store.find(repository, fingerprint)
            if existing is not None:
                logger.info("[%s] Build context unchanged, using %s", name, existing.reference)
                return existing

        logger.info("[%s] Building %s:%s", name, repository, fingerprint[:12])
        return self._build(descriptor, repository, fingerprint)

    def _build(self, descriptor: ServiceDescriptor, repository: str, fingerprint: str) -> Image:
        """
        Runs the Dockerfile in a staging directory and publishes it to the store.
        """
        context, dockerfile = self.context_paths(descriptor)
        image_dir = str(self.store.image_dir(repository, fingerprint))
        staging = image_dir + ".building"
        if os.path.exists(staging):
            shutil.rmtree(staging)
        os.makedirs(staging)

        try:
            ast = self.parser.parse(dockerfile)
            stage = self._run_instructions(descriptor, ast.instructions, context, staging)

            if os.path.exists(image_dir):
                shutil.rmtree(image_dir)
            os.makedirs(image_dir)
            rootfs = os.path.join(image_dir, "rootfs")
            os.rename(stage.rootfs, rootfs)
        except BuildError:
            raise
        except (OSError, ValueError) as e:
            raise BuildError(f"build failed: {e}", service=descriptor.name)
        finally:
            if os.path.exists(staging):
                shutil.rmtree(staging, ignore_errors=True)

        image = Image(
            reference=f"{repository}:{fingerprint[:12]}",
            repository=repository,
            tag=fingerprint[:12],
            fingerprint=fingerprint,
            service=descriptor.name,
            rootfs_path=rootfs,
            config=stage.config,
            created=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        logger.info("[%s] Built %s", descriptor.name, image.reference)
        return self.store.add(image)

    def _run_instructions(self,
                          descriptor: ServiceDescriptor,
                          instructions: List[Instruction],
                          context: str,
                          staging: str) -> _Stage:
        """
        Interprets the instructions, returning the final stage.
        """
        name = descriptor.name
        args: Dict[str, str] = dict(descriptor.build.args)
        stages: List[_Stage] = []
        stage: Optional[_Stage] = None
        ignore = read_ignore_patterns(context)

        for inst in instructions:
            cmd = inst.instruction

            if cmd == "ARG":
                for arg in inst.arguments:
                    key, _, default = arg.partition('=')
                    if key not in args and default:
                        args[key] = default
                continue

            if cmd == "FROM":
                stage = self._new_stage(inst, staging, len(stages), args)
                stages.append(stage)
                continue

            if stage is None:
                # no FROM: start from an empty root
                stage = _Stage(os.path.join(staging, "stage-0"), ImageConfig())
                os.makedirs(stage.rootfs)
                stages.append(stage)

            variables = dict(args)
            variables.update(stage.config.env)

            def expand(text: str) -> str:
                return EnvironmentInterpolator.interpolate(text, variables)

            if not inst.arguments and (cmd in ("WORKDIR", "RUN")
                                       or (cmd in ("CMD", "ENTRYPOINT") and not inst.exec_form)):
                # CMD [] and ENTRYPOINT [] are valid and clear the inherited value
                raise BuildError(f"{cmd} requires at least one argument (line {inst.line})", service=name)

            if cmd == "WORKDIR":
                stage.config.working_dir = posixpath.normpath(
                    posixpath.join(stage.config.working_dir, expand(inst.arguments[0]))
                )
                os.makedirs(self._in_rootfs(stage, stage.config.working_dir), exist_ok=True)
            elif cmd == "ENV":
                for arg in inst.arguments:
                    if '=' in arg:
                        k, v = arg.split('=', 1)
                        stage.config.env[k] = expand(v)
            elif cmd == "LABEL":
                for arg in inst.arguments:
                    if '=' in arg:
                        k, v = arg.split('=', 1)
                        stage.config.labels[k] = expand(v)
            elif cmd == "EXPOSE":
                for port in inst.arguments:
                    number = int(expand(port).split('/')[0])
                    if number not in stage.config.exposed_ports:
                        stage.config.exposed_ports.append(number)
            elif cmd in ("COPY", "ADD"):
                self._copy(descriptor, inst, [expand(a) for a in inst.arguments],
                           context, ignore, stage, stages)
            elif cmd == "RUN":
                self._run_step(descriptor, inst, stage, args)
            elif cmd == "CMD":
                stage.config.cmd = self._command(inst)
            elif cmd == "ENTRYPOINT":
                stage.config.entrypoint = self._command(inst)
                # Docker resets an inherited CMD when ENTRYPOINT is set
                stage.config.cmd = []
            elif cmd in IGNORED_INSTRUCTIONS:
                logger.debug("[%s] Ignoring %s (line %d)", name, cmd, inst.line)
            else:
                raise BuildError(f"unknown instruction {cmd} on line {inst.line}", service=name)

        if stage is None:
            raise BuildError("build descriptor has no instructions", service=name)
        return stage

    def _new_stage(self, inst: Instruction, staging: str, index: int, args: Dict[str, str]) -> _Stage:
        """
        FROM <base> [AS name]. A base that is a stored image seeds the stage with its
        root filesystem and config; any other base is expected to be provided by the host.
        """
        words = inst.arguments
        base = EnvironmentInterpolator.interpolate(words[0], args) if words else "scratch"
        alias = words[2] if len(words) >= 3 and words[1].lower() == "as" else None
        rootfs = os.path.join(staging, f"stage-{index}")

        parent = self.store.get(base) if base != "scratch" else None
        if parent is not None:
            shutil.copytree(parent.rootfs_path, rootfs, symlinks=True)
            config = parent.config.model_copy(deep=True)
        else:
            if base != "scratch":
                logger.debug("Base %s is not a stored image; using the host toolchain", base)
            os.makedirs(rootfs)
            config = ImageConfig()
        return _Stage(rootfs, config, alias)

    def _copy(self, descriptor, inst, arguments, context, ignore, stage, stages) -> None:
        """
        COPY/ADD <src>... <dest>. Sources come from the context, or from an earlier
        stage with --from.
        """
        name = descriptor.name
        if len(arguments) < 2:
            raise BuildError(f"{inst.instruction} needs a source and a destination (line {inst.line})",
                             service=name)
        *sources, dest = arguments

        source_root = context
        from_stage = inst.flags.get("from")
        if from_stage is not None:
            match = [s for i, s in enumerate(stages[:-1]) if s.name == from_stage or str(i) == from_stage]
            if not match:
                raise BuildError(f"unknown build stage {from_stage!r} (line {inst.line})", service=name)
            source_root = match[0].rootfs
            ignore = []

        # relative destinations are relative to WORKDIR
        dest_path = self._in_rootfs(stage, posixpath.join(stage.config.working_dir, dest))
        to_directory = dest.endswith('/') or dest == '.' or len(sources) > 1

        for source in sources:
            if "://" in source:
                raise BuildError(f"remote sources are not supported: {source}", service=name)
            pattern = os.path.normpath(os.path.join(source_root, source.lstrip('/')))
            if os.path.commonpath([pattern, source_root]) != os.path.normpath(source_root):
                raise BuildError(f"source {source} is outside the build context", service=name)
            matches = sorted(glob.glob(pattern))
            if not matches:
                raise BuildError(f"{inst.instruction} source {source} not found (line {inst.line})",
                                 service=name)
            for path in matches:
                rel = os.path.relpath(path, source_root).replace(os.sep, '/')
                if rel != '.' and is_ignored(rel, ignore):
                    continue
                if os.path.isdir(path):
                    shutil.copytree(path, dest_path, symlinks=True, dirs_exist_ok=True,
                                    ignore=self._ignore_callback(source_root, ignore))
                else:
                    target = os.path.join(dest_path, os.path.basename(path)) if (
                        to_directory or os.path.isdir(dest_path)) else dest_path
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    shutil.copy2(path, target)

    @staticmethod
    def _ignore_callback(source_root, ignore):
        def callback(directory, names):
            skipped = set()
            for entry in names:
                rel = os.path.relpath(os.path.join(directory, entry), source_root).replace(os.sep, '/')
                if entry in (".convoy", ".git", "__pycache__") or is_ignored(rel, ignore):
                    skipped.add(entry)
            return skipped
        return callback

    def _run_step(self, descriptor: ServiceDescriptor, inst: Instruction,
                  stage: _Stage, args: Dict[str, str]) -> None:
        """
        Executes one RUN step inside the stage's root filesystem.
        """
        name = descriptor.name
        command = self._command(inst)
        cwd = self._in_rootfs(stage, stage.config.working_dir)
        os.makedirs(cwd, exist_ok=True)

        env = base_environment()
        env.update(args)
        env.update(stage.config.env)
        env["CONVOY_ROOTFS"] = stage.rootfs

        logger.info("[%s] Step %d: %s", name, inst.line, inst.raw)
        try:
            result = subprocess.run(
                command,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.settings.build_timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = "".join(
                part.decode(errors="replace") if isinstance(part, bytes) else part
                for part in (e.stdout, e.stderr) if part
            )
            raise BuildError(
                f"build step on line {inst.line} timed out after {self.settings.build_timeout:g}s",
                service=name, exit_status=None, output=output,
            )
        except OSError as e:
            raise BuildError(f"build step on line {inst.line} could not run: {e}", service=name)

        output = (result.stdout or "") + (result.stderr or "")
        if output:
            logger.debug("[%s] %s", name, output.rstrip())
        if result.returncode != 0:
            raise BuildError(
                f"build step on line {inst.line} exited with status {result.returncode}",
                service=name, exit_status=result.returncode, output=output,
            )

    @staticmethod
    def _command(inst: Instruction) -> List[str]:
        """Exec form as is, shell form through /bin/sh -c."""
        if inst.exec_form:
            return list(inst.arguments)
        return ["/bin/sh", "-c", inst.arguments[0]] if inst.arguments else []

    @staticmethod
    def _in_rootfs(stage: _Stage, path: str) -> str:
        """
        Maps an image path onto the stage's root filesystem directory.
        """
        return os.path.join(stage.rootfs, posixpath.normpath(path).lstrip('/'))
