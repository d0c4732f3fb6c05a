"""
Runtime knobs for the orchestrator, overridable through CONVOY_* variables.
"""
import os
from typing import Mapping, Optional
from pydantic import BaseModel, Field

ENV_PREFIX = "CONVOY_"


class RuntimeSettings(BaseModel):
    """
    Timeouts and locations used by the build, network and runtime layers.
    All durations are in seconds.
    """
    state_dir: str = ".convoy"
    start_grace: float = Field(default=1.0, ge=0)
    start_timeout: float = Field(default=60.0, gt=0)
    stop_timeout: float = Field(default=10.0, ge=0)
    build_timeout: float = Field(default=600.0, gt=0)
    network_retry_timeout: float = Field(default=10.0, ge=0)
    poll_interval: float = Field(default=0.1, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "RuntimeSettings":
        """
        Builds settings from CONVOY_<FIELD> variables, with explicit overrides on top.

        :param environ: Mapping to read from, defaults to ``os.environ``.
        :return: Validated settings.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for field in cls.model_fields:
            raw = environ.get(ENV_PREFIX + field.upper())
            if raw is not None and raw.strip() != "":
                values[field] = raw.strip()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def resolve_state_dir(self, base_dir: str) -> str:
        """Absolute state directory; relative values are anchored at the unit's directory."""
        if os.path.isabs(self.state_dir):
            return self.state_dir
        return os.path.abspath(os.path.join(base_dir, self.state_dir))
