"""Configuration models for the tunnel supervisor and remote session."""

import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import ConfigError
from .utils import executable_names, mask_sensitive_data, normalize_image_name

DEFAULT_BINARY_NAME = "frpc"
DEFAULT_CONFIG_NAME = "frpc.toml"


class TunnelConfig(BaseModel):
    """Launch parameters for one tunnel run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    executable_path: Path = Field(description="Path to the tunnel executable")
    config_path: Path = Field(description="Config file passed with -c")
    target_port: int = Field(ge=1, le=65535, description="Port the tunnel occupies")
    readiness_pattern: str = Field(
        min_length=1, description="Output text signalling the relay is live"
    )
    readiness_mode: Literal["substring", "regex"] = Field(
        default="substring", description="How readiness_pattern is matched"
    )
    launch_timeout: float = Field(
        default=10.0, gt=0, le=600, description="Seconds to wait for readiness"
    )
    working_dir: Path | None = Field(
        default=None, description="Working directory for the tunnel process"
    )

    @model_validator(mode="after")
    def validate_readiness_regex(self) -> "TunnelConfig":
        """Reject readiness regexes that do not compile."""
        if self.readiness_mode == "regex":
            try:
                re.compile(self.readiness_pattern)
            except re.error as e:
                raise ValueError(f"Invalid readiness regex: {e}") from e
        return self

    @property
    def image_name(self) -> str:
        """Process image name used for the sweep."""
        return normalize_image_name(self.executable_path.name)

    @property
    def launch_args(self) -> list[str]:
        """Fixed argument form for the tunnel executable."""
        return ["-c", str(self.config_path)]

    def is_ready_line(self, line: str) -> bool:
        """Check whether an output line carries the readiness signal."""
        if self.readiness_mode == "regex":
            return re.search(self.readiness_pattern, line) is not None
        return self.readiness_pattern in line

    def validate_files(self) -> None:
        """Check that the executable and config file exist.

        Raises:
            ConfigError: If either file is missing or not a regular file
        """
        if not self.executable_path.exists():
            raise ConfigError(f"Tunnel executable not found: {self.executable_path}")
        if not self.executable_path.is_file():
            raise ConfigError(
                f"Tunnel executable is not a file: {self.executable_path}"
            )
        if not self.config_path.exists():
            raise ConfigError(f"Tunnel config file not found: {self.config_path}")
        if not self.config_path.is_file():
            raise ConfigError(f"Tunnel config path is not a file: {self.config_path}")
        if self.working_dir is not None and not self.working_dir.is_dir():
            raise ConfigError(f"Working directory not found: {self.working_dir}")

    @classmethod
    def from_directory(
        cls,
        base_dir: str | Path,
        target_port: int,
        readiness_pattern: str,
        binary_name: str = DEFAULT_BINARY_NAME,
        config_name: str = DEFAULT_CONFIG_NAME,
        **kwargs: object,
    ) -> "TunnelConfig":
        """Build a config for an executable shipped next to the application.

        Looks for ``frpc`` (``frpc.exe`` on Windows) and ``frpc.toml`` inside
        ``base_dir`` and runs the process from that directory. Files are not
        checked here; :meth:`validate_files` does that before launch.
        """
        base = Path(base_dir)
        candidates = [base / name for name in executable_names(binary_name)]
        executable = next((p for p in candidates if p.is_file()), candidates[-1])
        kwargs.setdefault("working_dir", base)
        return cls(
            executable_path=executable,
            config_path=base / config_name,
            target_port=target_port,
            readiness_pattern=readiness_pattern,
            **kwargs,  # type: ignore[arg-type]
        )


class SessionCredentials(BaseModel):
    """Connection parameters for the remote-file session."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    host: str = Field(min_length=1, description="Remote host reached via the tunnel")
    port: int = Field(default=22, ge=1, le=65535, description="SSH port")
    username: str = Field(min_length=1, description="Login user")
    password: str = Field(default="", repr=False, description="Login password")

    def masked(self) -> dict[str, object]:
        """Return a log-safe view of the credentials."""
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": mask_sensitive_data(self.password or None),
        }


class ClassifierRules(BaseModel):
    """Keywords for output-line severity, tested in priority order."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    error: tuple[str, ...] = ("error", "fail", "fatal", "panic")
    warning: tuple[str, ...] = ("warn",)
    success: tuple[str, ...] = ("success", "succeed", "ready")
    info: tuple[str, ...] = ("start", "login", "connect", "try", "prepar", "init")

    @field_validator("error", "warning", "success", "info")
    @classmethod
    def lowercase_keywords(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Store keywords lower-cased and drop blanks."""
        return tuple(k.strip().lower() for k in v if k.strip())


class SupervisorSettings(BaseModel):
    """Tunable timeouts and retry limits for the supervisor."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    kill_grace: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Seconds to wait for exit after kill"
    )
    sweep_enabled: bool = Field(
        default=True, description="Kill stray processes by image name on stop"
    )
    port_reclaim_attempts: int = Field(
        default=3, ge=1, le=20, description="Port reclaim query/kill rounds"
    )
    port_reclaim_delay: float = Field(
        default=0.5, ge=0.0, le=10.0, description="Fixed delay between rounds"
    )
    diagnostic_timeout: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Timeout for diagnostic commands"
    )
    connect_timeout: float = Field(
        default=10.0, ge=0.1, le=120.0, description="Remote session connect timeout"
    )
    classifier: ClassifierRules = Field(default_factory=ClassifierRules)
