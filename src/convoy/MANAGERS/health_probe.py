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
Health probes deciding when a starting container counts as running.

Without a probe a container is running once its process has stayed alive past
the grace period. With one, the probe must pass within
``start_period + interval * retries``.
"""
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from ..MODELS.container_instance import ContainerInstance
from ..MODELS.service_definition import HealthCheck


@dataclass
class ProbeResult:
    """Outcome of one probe run."""

    success: bool
    output: str = ""


ProbeHook = Callable[[ContainerInstance], bool]


class CommandProbe:
    """
    Runs a Docker-style health check command (CMD, CMD-SHELL, NONE) inside the
    container's environment and working directory.
    """

    def __init__(self, check: HealthCheck):
        self.check = check
        self.interval = check.interval
        self.budget = check.start_period + check.interval * max(check.retries, 1)

    def __call__(self, instance: ContainerInstance) -> ProbeResult:
        """
        Run the health check command for a container.

        Args:
            instance: The container being probed.

        Returns:
            ProbeResult with the first 500 characters of output.
        """
        cmd = self.check.test
        use_shell = False

        # Parse command format
        if cmd[0] == "CMD":
            real_cmd: Union[List[str], str] = cmd[1:]
        elif cmd[0] == "CMD-SHELL":
            real_cmd = cmd[1] if len(cmd) > 1 else ""
            use_shell = True
        elif cmd[0] == "NONE":
            return ProbeResult(True)
        else:
            real_cmd = cmd

        try:
            result = subprocess.run(
                real_cmd,
                shell=use_shell,
                env=instance.env,
                cwd=instance.workdir or None,
                capture_output=True,
                timeout=self.check.timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return ProbeResult(False, "Health check timed out")
        except OSError as e:
            return ProbeResult(False, str(e))

        if result.returncode == 0:
            return ProbeResult(True, (result.stdout or "")[:500])
        return ProbeResult(
            False,
            (result.stderr or "")[:500] or f"Exit code: {result.returncode}",
        )


class HookProbe:
    """Wraps a plain callable returning True once the service is ready."""

    def __init__(self, hook: ProbeHook, interval: float = 0.5, budget: float = 30.0):
        self.hook = hook
        self.interval = interval
        self.budget = budget

    def __call__(self, instance: ContainerInstance) -> ProbeResult:
        try:
            return ProbeResult(bool(self.hook(instance)))
        except Exception as e:  # a hook failing is a failed probe, not a crash
            return ProbeResult(False, str(e))


Probe = Union[CommandProbe, HookProbe]


@dataclass
class ProbeTracker:
    """Per-container probing progress while it is starting."""

    probe: Optional[Probe]
    started: float = field(default_factory=time.monotonic)
    next_run: float = 0.0
    last_output: str = ""


def probe_for(check: Optional[HealthCheck], hooks: Dict[str, ProbeHook], service: str) -> Optional[Probe]:
    """
    The probe for a service: an explicit hook wins over the descriptor's health check.
    """
    if service in hooks:
        return HookProbe(hooks[service])
    if check is not None and check.test and check.test[0] != "NONE":
        return CommandProbe(check)
    return None
