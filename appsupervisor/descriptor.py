"""
App descriptors: the declarative unit describing one supervised program.

Descriptors are read from an ecosystem file (JSON or YAML), validated once at
load time, and never mutated afterwards. Field names follow the ecosystem file
conventions (``cwd``, ``script``, ``instances``, ``autorestart``, ``watch``,
``env``) and also accept the long camelCase and snake_case spellings.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

import psutil
import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

logger = logging.getLogger(__name__)

# Interpreters inferred from the entry point suffix when none is configured
INTERPRETERS = {
    ".js": "node",
    ".mjs": "node",
    ".cjs": "node",
    ".py": sys.executable,
    ".sh": "bash",
    ".rb": "ruby",
}

DEFAULT_IGNORE_WATCH = [".git", "node_modules", "__pycache__", "*.log"]


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class AppDescriptor(BaseModel):
    """Desired run configuration for one supervised application."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    name: str
    working_directory: Path = Field(
        Path("."), validation_alias=_alias("workingDirectory", "working_directory", "cwd")
    )
    entry_point: str = Field(..., validation_alias=_alias("entryPoint", "entry_point", "script"))
    args: list[str] = Field(default_factory=list)
    interpreter: Optional[str] = None
    instance_count: int = Field(1, validation_alias=_alias("instanceCount", "instance_count", "instances"))
    auto_restart: bool = Field(False, validation_alias=_alias("autoRestart", "auto_restart", "autorestart"))
    watch_enabled: bool = Field(False, validation_alias=_alias("watchEnabled", "watch_enabled", "watch"))
    ignore_watch: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IGNORE_WATCH),
        validation_alias=_alias("ignoreWatch", "ignore_watch"),
    )
    environment: dict[str, str] = Field(default_factory=dict, validation_alias=_alias("environment", "env"))

    # Per-app overrides of the supervisor-wide restart/stop settings
    max_restarts: Optional[int] = Field(None, ge=1, validation_alias=_alias("maxRestarts", "max_restarts"))
    restart_window: Optional[float] = Field(None, gt=0, validation_alias=_alias("restartWindow", "restart_window"))
    min_uptime: Optional[float] = Field(None, ge=0, validation_alias=_alias("minUptime", "min_uptime"))
    restart_delay: Optional[float] = Field(None, ge=0, validation_alias=_alias("restartDelay", "restart_delay"))
    kill_timeout: Optional[float] = Field(None, gt=0, validation_alias=_alias("killTimeout", "kill_timeout"))

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value

    @field_validator("entry_point")
    @classmethod
    def _check_entry_point(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("entry point must not be empty")
        return value

    @field_validator("instance_count", mode="before")
    @classmethod
    def _expand_instances(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() == "max":
            return psutil.cpu_count() or 1
        return value

    @field_validator("instance_count")
    @classmethod
    def _check_instances(cls, value: int) -> int:
        if value < 1:
            raise ValueError("instance count must be at least 1")
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            return value
        env = {}
        for key, item in value.items():
            if isinstance(item, bool):
                env[str(key)] = "true" if item else "false"
            elif item is None:
                env[str(key)] = ""
            elif isinstance(item, (dict, list)):
                env[str(key)] = json.dumps(item)
            else:
                env[str(key)] = str(item)
        return env

    def resolve(self, base_dir: Path) -> "AppDescriptor":
        """Return a copy whose working directory is absolute, relative paths taken from base_dir."""
        working_dir = self.working_directory.expanduser()
        if not working_dir.is_absolute():
            working_dir = Path(base_dir) / working_dir
        return self.model_copy(update={"working_directory": working_dir.resolve()})

    def validate_runtime(self):
        """Check the parts of the descriptor that depend on the filesystem."""
        if not self.working_directory.is_dir():
            raise ValidationError(
                f"App '{self.name}': working directory {self.working_directory} does not exist"
            )

    def entry_path(self) -> Path:
        """The entry point as a path, relative entries taken from the working directory."""
        path = Path(self.entry_point).expanduser()
        if not path.is_absolute():
            path = self.working_directory / path
        return path

    def resolved_interpreter(self) -> Optional[str]:
        """The program that runs the entry point, or None to execute it directly."""
        if self.interpreter:
            return None if self.interpreter.lower() == "none" else self.interpreter
        return INTERPRETERS.get(Path(self.entry_point).suffix.lower())

    def child_env(self, index: int) -> dict[str, str]:
        """Environment for instance `index`: parent env, then supervisor vars, then the descriptor's env."""
        env = os.environ.copy()
        env["SUPERVISOR_APP_NAME"] = self.name
        env["SUPERVISOR_INSTANCE"] = str(index)
        env["NODE_APP_INSTANCE"] = str(index)
        env.update(self.environment)
        return env


def parse_descriptor(data: Any, base_dir: Optional[Path] = None) -> AppDescriptor:
    """Build a descriptor from a mapping, raising ValidationError when it is malformed."""
    if not isinstance(data, dict):
        raise ValidationError(f"Descriptor must be a mapping, got {type(data).__name__}")
    try:
        descriptor = AppDescriptor.model_validate(data)
    except PydanticValidationError as e:
        label = data.get("name") or "<unnamed>"
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'descriptor'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid descriptor '{label}': {problems}") from e
    return descriptor.resolve(base_dir or Path.cwd())


def _read_file(path: Path) -> Any:
    text = path.read_text()
    if path.suffix.lower() in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


def load_descriptors(path: Path) -> list[AppDescriptor]:
    """
    Load all descriptors from an ecosystem file.

    The file holds either a list of descriptors or an object with an ``apps``
    list. A malformed entry or a duplicate name is logged and skipped so the
    remaining descriptors still load. An unreadable file raises ValidationError.
    """
    path = Path(path)
    try:
        raw = _read_file(path)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot read descriptor file {path}: {e}") from e

    if isinstance(raw, dict):
        raw = raw.get("apps")
    if not isinstance(raw, list):
        raise ValidationError(f"Descriptor file {path} must contain a list of apps")

    descriptors: dict[str, AppDescriptor] = {}
    for entry in raw:
        try:
            descriptor = parse_descriptor(entry, base_dir=path.parent.resolve())
        except ValidationError as e:
            logger.error(str(e))
            continue
        if descriptor.name in descriptors:
            logger.error(f"Duplicate app name '{descriptor.name}' in {path}, ignoring the later entry")
            continue
        descriptors[descriptor.name] = descriptor

    logger.info(f"Loaded {len(descriptors)} app descriptor(s) from {path}")
    return list(descriptors.values())
