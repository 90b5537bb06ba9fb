"""Configuration handling for voicenoted daemon."""

import getpass
import os
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def get_default_config_path() -> Path:
    """Get the default config file path following the XDG base directory layout."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / "voicenote" / "config.toml"


def get_default_socket_path() -> Path:
    """Get the default socket path following the XDG base directory layout."""
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        sock_dir = Path(xdg_runtime_dir) / "voicenote"
        try:
            sock_dir.mkdir(parents=True, exist_ok=True)
            if not os.access(sock_dir, os.W_OK | os.X_OK):
                raise OSError("Insufficient permissions for XDG runtime dir.")
            return sock_dir / "daemon.sock"
        except (OSError, PermissionError) as e:
            print(
                f"Warning: Could not use XDG_RUNTIME_DIR ({e}), falling back to /tmp."
            )

    uid = getpass.getuser()
    return Path(f"/tmp/voicenote-{uid}.sock")


def get_default_log_path() -> Path:
    """Get the default log file path following the XDG base directory layout."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / "voicenote"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "voicenoted.log"


def get_default_working_dir() -> Path:
    """Get the private working directory following the XDG base directory layout."""
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base_dir = Path(xdg_data)
    else:
        base_dir = Path.home() / ".local" / "share"

    return base_dir / "voicenote" / "work"


class AudioConfig(BaseModel):
    """Audio capture and conversion configuration."""

    target: str = Field(
        default="auto", description="pw-record target node (auto = default source)."
    )
    capture_rate: int = Field(
        default=48000, gt=0, description="Sample rate used while recording (Hz)."
    )
    capture_channels: int = Field(
        default=1, ge=1, le=2, description="Channel count used while recording."
    )
    noise_reduction: bool = Field(
        default=False, description="Apply an FFT denoise filter during conversion."
    )
    noise_floor_db: float = Field(
        default=-25.0,
        ge=-80.0,
        le=-20.0,
        description="Noise floor for the denoise filter (dB).",
    )


class WhisperConfig(BaseModel):
    """Whisper model configuration."""

    model: str = Field(
        default="small.en",
        description="Whisper model identifier (e.g., small.en, medium).",
    )
    device: str = Field(
        default="auto", description="Device for inference (auto, cpu, cuda)."
    )
    compute_type: str = Field(
        default="auto",
        description="Compute type for inference (auto, float32, float16, int8).",
    )
    language: str = Field(
        default="auto", description="Language code, or 'auto' to detect."
    )
    translate: bool = Field(
        default=False,
        description="Translate to English (only with language 'auto' and a multilingual model).",
    )
    beam_size: int = Field(
        default=5,
        ge=1,
        description="Beam size for search (1-10, higher is slower but more accurate).",
    )
    cpu_threads: int = Field(
        default=0, ge=0, description="Number of CPU threads for inference (0 = auto)."
    )

    @field_validator("model")
    @classmethod
    def check_model_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Whisper model identifier cannot be empty")
        return v

    @field_validator("language")
    @classmethod
    def normalize_language(cls, v: str) -> str:
        return v.strip().lower() or "auto"


class StorageConfig(BaseModel):
    """Artifact storage configuration."""

    working_dir: Optional[Path] = Field(
        default=None, description="Private working directory for recordings."
    )
    external_dir: Optional[Path] = Field(
        default=None,
        description="User-selected directory for finished notes (unset = keep in working dir).",
    )
    audio_extension: str = Field(
        default=".wav", description="Extension of the persisted audio file."
    )
    transcript_extension: str = Field(
        default=".md", description="Extension of the persisted transcript file."
    )

    @field_validator("audio_extension", "transcript_extension")
    @classmethod
    def check_extension(cls, v: str) -> str:
        if not v.startswith(".") or len(v) < 2:
            raise ValueError("Extension must start with '.'")
        return v

    @property
    def computed_working_dir(self) -> Path:
        return self.working_dir or get_default_working_dir()


class DaemonConfig(BaseModel):
    """Daemon runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )
    socket_path: Optional[Path] = Field(
        default=None, description="Optional custom socket path for IPC."
    )
    tick_interval_s: float = Field(
        default=1.0, gt=0, description="Period of elapsed-time reports while recording."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()

    @property
    def computed_socket_path(self) -> Path:
        return self.socket_path or get_default_socket_path()


class AppConfig(BaseModel):
    """Root configuration."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    whisper: WhisperConfig = Field(default_factory=WhisperConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in standard locations.
    If no config file is found, returns default configuration.

    Args:
        path: Optional path to config file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ValueError: If config file exists but has invalid format/content.
        OSError: If config file exists but can't be read.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        return AppConfig()

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e

    try:
        return AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
