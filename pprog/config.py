"""Configuration management for pprog."""

import json
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.pprog/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.pprog/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "pprog.yaml"

DEFAULT_PRIVILEGE_PROMPT_PATTERNS = [
    r"\[sudo\] password for [^:]*:\s*$",
    r"(?i)password( for [^:]*)?:\s*$",
    r"(?i)enter passphrase[^:]*:\s*$",
]


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "anthropic"
    model: str = "claude-3-5-haiku-latest"
    api_key: str = ""
    base_url: str = ""
    max_output_tokens: int = 8096
    temperature: float | None = None


class ContextConfig(BaseModel):
    """Context window configuration."""

    # None means "use the provider's own ceiling"
    max_tokens: int | None = None


class ToolsConfig(BaseModel):
    """Tools configuration."""

    check_cmd: str = ""
    execute_timeout: int = 120
    max_output_chars: int = 10000
    privilege_prompt_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PRIVILEGE_PROMPT_PATTERNS)
    )
    privileged_input_timeout: int = 300
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class LoopConfig(BaseModel):
    """Tool-call loop configuration."""

    max_tool_iterations: int = 50


class ProjectConfig(BaseModel):
    """Project root configuration."""

    root: str = "."


class SessionConfig(BaseModel):
    """Session configuration."""

    path: str = str(DEFAULT_DB_PATH)
    persist: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for pprog."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="PPROG_",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; PPROG_* env vars fill what the file leaves unset."""
        # Values read from YAML are init kwargs, which pydantic-settings ranks above env
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> Path:
        """Save configuration to YAML file."""
        config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        return config_path

    def resolved_project_root(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve project root, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.project.root).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


def detect_check_cmd(root: Path | str) -> str:
    """Guess a health-check command from the files found at the project root."""
    root_path = Path(root)

    if (root_path / "Cargo.toml").exists():
        return "cargo check"
    if (root_path / "tsconfig.json").exists():
        return "tsc --noEmit"
    if (root_path / "gradlew").exists():
        return "./gradlew check"
    package_json = root_path / "package.json"
    if package_json.exists():
        try:
            data = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            data = {}
        main = data.get("main") if isinstance(data, dict) else None
        if isinstance(main, str) and main.strip():
            return f"node {main.strip()}"
    if (root_path / "pyproject.toml").exists() or (root_path / "setup.py").exists():
        return "python -m compileall -q ."
    return ""


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
