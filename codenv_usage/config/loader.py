"""
Configuration management and loading.

Handles the shared code-env config file, the on-disk locations of the
usage ledger and its companions, and the explicit caller context.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

CONFIG_ENV_VAR = "CODE_ENV_CONFIG"
DEFAULT_CONFIG_DIR = Path("~/.config/code-env")
DEFAULT_CONFIG_NAME = "config.json"


@dataclass(frozen=True)
class ProfileConfig:
    """A configured profile as far as usage accounting is concerned.

    ``pricing`` is kept as the raw mapping from the config file; the
    pricing resolver is tolerant of its contents (e.g. "$3.00" strings).
    """
    key: str
    name: Optional[str] = None
    type: Optional[str] = None
    pricing: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsagePaths:
    """Resolved locations of every file the usage engine touches."""
    ledger_path: Path
    state_path: Path
    lock_path: Path
    binding_log_path: Path
    codex_sessions_dir: Path
    claude_sessions_dir: Path

    def sessions_dir(self, tool: str) -> Path:
        if tool == "codex":
            return self.codex_sessions_dir
        if tool == "claude":
            return self.claude_sessions_dir
        raise ValueError(f"Unsupported tool: {tool}")


@dataclass(frozen=True)
class UsageConfig:
    """Complete usage configuration."""
    paths: UsagePaths
    profiles: Dict[str, ProfileConfig] = field(default_factory=dict)
    pricing_models: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    config_path: Optional[Path] = None

    def get_profile(self, key: Optional[str]) -> Optional[ProfileConfig]:
        """Get the configured profile for ``key``, if any."""
        if not key:
            return None
        return self.profiles.get(key)


@dataclass(frozen=True)
class UsageContext:
    """Who is asking: the tool, the active profile and where it runs.

    Passed explicitly into every entry point instead of being read from
    process environment variables.
    """
    tool: Optional[str] = None
    profile_key: Optional[str] = None
    profile_name: Optional[str] = None
    cwd: Optional[str] = None
    terminal_tag: Optional[str] = None

    @property
    def has_profile(self) -> bool:
        return bool(self.profile_key or self.profile_name)


def expand_path(value: str) -> Path:
    """Expand ``~`` and environment variables in a configured path."""
    return Path(os.path.expandvars(os.path.expanduser(str(value))))


def default_config_path() -> Path:
    return expand_path(str(DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_NAME))


def find_config_path(
    explicit_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Path:
    """Pick the config file: explicit path, then $CODE_ENV_CONFIG, then default."""
    env = os.environ if environ is None else environ
    if explicit_path:
        return expand_path(explicit_path)
    if env.get(CONFIG_ENV_VAR):
        return expand_path(env[CONFIG_ENV_VAR])
    return default_config_path()


def resolve_usage_paths(
    raw_config: Mapping[str, Any],
    config_dir: Path,
    environ: Optional[Mapping[str, str]] = None,
) -> UsagePaths:
    """Resolve ledger, state, lock, binding log and session directories.

    Args:
        raw_config: Parsed config document
        config_dir: Directory holding the config file; default home of
            the ledger and binding log
        environ: Environment used for CODEX_HOME / CLAUDE_HOME lookups

    Returns:
        Fully resolved UsagePaths
    """
    env = os.environ if environ is None else environ

    def configured(key: str) -> Optional[Path]:
        value = raw_config.get(key)
        if value is None or value == "":
            return None
        if not isinstance(value, str):
            raise ValueError(f"'{key}' must be a string path")
        return expand_path(value)

    ledger_path = configured("usagePath") or config_dir / "usage.jsonl"
    state_path = configured("usageStatePath") or Path(f"{ledger_path}.state.json")
    binding_log_path = configured("profileLogPath") or config_dir / "profile-log.jsonl"

    codex_dir = configured("codexSessionsPath")
    if codex_dir is None:
        codex_home = env.get("CODEX_HOME")
        codex_dir = (
            expand_path(codex_home) / "sessions"
            if codex_home
            else expand_path("~/.codex/sessions")
        )

    claude_dir = configured("claudeSessionsPath")
    if claude_dir is None:
        claude_home = env.get("CLAUDE_HOME")
        claude_dir = (
            expand_path(claude_home) / "projects"
            if claude_home
            else expand_path("~/.claude/projects")
        )

    return UsagePaths(
        ledger_path=ledger_path,
        state_path=state_path,
        lock_path=Path(f"{state_path}.lock"),
        binding_log_path=binding_log_path,
        codex_sessions_dir=codex_dir,
        claude_sessions_dir=claude_dir,
    )


def parse_usage_config(
    raw_config: Optional[Mapping[str, Any]],
    config_dir: Path,
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> UsageConfig:
    """Validate a parsed config document and build a UsageConfig.

    Keys that belong to other commands (statusline, shell, defaults) are
    ignored; the keys this engine consumes are checked strictly.

    Raises:
        ValueError: If a consumed section has the wrong shape
    """
    raw = raw_config or {}
    if not isinstance(raw, Mapping):
        raise ValueError("Configuration root must be a dictionary")

    paths = resolve_usage_paths(raw, config_dir, environ)

    profiles_data = raw.get("profiles") or {}
    if not isinstance(profiles_data, Mapping):
        raise ValueError("'profiles' must be a dictionary")

    profiles = {}
    for key, profile_data in profiles_data.items():
        profiles[str(key)] = _parse_profile_config(str(key), profile_data)

    pricing_data = raw.get("pricing") or {}
    if not isinstance(pricing_data, Mapping):
        raise ValueError("'pricing' must be a dictionary")
    models_data = pricing_data.get("models") or {}
    if not isinstance(models_data, Mapping):
        raise ValueError("'pricing.models' must be a dictionary")

    pricing_models = {}
    for model, model_pricing in models_data.items():
        if not isinstance(model_pricing, Mapping):
            raise ValueError(f"Pricing for model '{model}' must be a dictionary")
        pricing_models[str(model)] = dict(model_pricing)

    return UsageConfig(
        paths=paths,
        profiles=profiles,
        pricing_models=pricing_models,
        config_path=config_path,
    )


def load_usage_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> UsageConfig:
    """Load and validate the usage configuration.

    A JSON config is valid YAML, so both formats go through
    ``yaml.safe_load``.

    Args:
        path: Explicit config path (``--config``); when omitted,
            $CODE_ENV_CONFIG and then the default location are used
        environ: Environment mapping, defaults to ``os.environ``

    Returns:
        Validated UsageConfig object

    Raises:
        FileNotFoundError: If an explicitly requested config file doesn't exist
        yaml.YAMLError: If the file cannot be parsed
        ValueError: If configuration is invalid
    """
    env = os.environ if environ is None else environ
    config_path = find_config_path(path, env)
    explicit = bool(path or env.get(CONFIG_ENV_VAR))

    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return parse_usage_config({}, config_path.parent, None, env)

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid config file {config_path}: {e}")

    if raw_config is None:
        raise ValueError("Configuration file is empty")

    return parse_usage_config(raw_config, config_path.parent, config_path, env)


def _parse_profile_config(key: str, data: Any) -> ProfileConfig:
    """Parse and validate one profile entry.

    Args:
        key: Profile key
        data: Profile configuration data

    Returns:
        Validated ProfileConfig

    Raises:
        ValueError: If the profile entry is malformed
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"Profile '{key}' must be a dictionary")

    name = data.get("name")
    if name is not None and not isinstance(name, str):
        raise ValueError(f"'name' in profiles.{key} must be a string")

    profile_type = data.get("type")
    if profile_type is not None and not isinstance(profile_type, str):
        raise ValueError(f"'type' in profiles.{key} must be a string")

    pricing = data.get("pricing") or {}
    if not isinstance(pricing, Mapping):
        raise ValueError(f"'pricing' in profiles.{key} must be a dictionary")

    return ProfileConfig(
        key=key,
        name=name.strip() if name and name.strip() else None,
        type=profile_type.strip() if profile_type and profile_type.strip() else None,
        pricing=dict(pricing),
    )
