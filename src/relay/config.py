import os
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveFloat,
    PositiveInt,
    SecretStr,
    ValidationError,
    model_validator,
)

from .errors import ConfigurationError

PROFILES_FILE = "profiles.toml"
DUMMY_PROFILES_FILE = "profiles.dummy.toml"
SETTINGS_FILE = "relay.yaml"


class ProviderKind(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    CLAUDE_CODE = "claude-code"
    GROQ = "groq"
    XAI = "xai"
    FIREWORKS = "fireworks"
    CEREBRAS = "cerebras"
    HUGGINGFACE = "huggingface"
    DUMMY = "dummy"


class Credentials(BaseModel):
    api_key: SecretStr | None = None
    api_key_env: str | None = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    def resolve(self) -> str | None:
        if self.api_key is not None:
            value = self.api_key.get_secret_value().strip()
            if value:
                return value
        if self.api_key_env:
            value = os.environ.get(self.api_key_env, "").strip()
            if value:
                return value
        return None


class QuotaLimit(BaseModel):
    max_requests: PositiveInt | None = None
    max_tokens: PositiveInt | None = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class BackendProfile(BaseModel):
    id: str = Field(min_length=1)
    kind: ProviderKind
    credentials: Credentials = Field(default_factory=Credentials)
    model: str = ""
    base_url: str | None = None
    quota_limit: QuotaLimit | None = None
    quota_reset_period: PositiveFloat | None = None
    temperature: float | None = None
    max_tokens: PositiveInt | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _lift_credentials(cls, data: object) -> object:
        # flat api_key / api_key_env keys are accepted alongside a credentials table
        if not isinstance(data, dict):
            return data
        normalized = dict(data)
        flat = {key: normalized.pop(key) for key in ("api_key", "api_key_env") if key in normalized}
        if flat:
            credentials = dict(normalized.get("credentials") or {})
            for key, value in flat.items():
                credentials.setdefault(key, value)
            normalized["credentials"] = credentials
        return normalized


class DispatchSettings(BaseModel):
    default_reset_period: PositiveFloat = Field(default=3600.0)
    request_timeout: PositiveFloat | None = None
    stream_buffer: PositiveInt = Field(default=64)
    metrics_dir: str | None = None

    model_config = ConfigDict(extra="forbid")


class _ProfilesFileModel(BaseModel):
    profiles: list[BackendProfile] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _unique_ids(self) -> "_ProfilesFileModel":
        seen: set[str] = set()
        duplicates: list[str] = []
        for profile in self.profiles:
            if profile.id in seen:
                duplicates.append(profile.id)
            seen.add(profile.id)
        if duplicates:
            raise ValueError(
                "duplicate profile ids: {ids}".format(ids=", ".join(sorted(set(duplicates))))
            )
        return self


@dataclass
class LoadedConfig:
    profiles: tuple[BackendProfile, ...]
    settings: DispatchSettings
    mtimes: dict[str, float] = field(default_factory=dict)
    watch_paths: tuple[str, ...] = field(default_factory=tuple)


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def parse_profiles(data: Any) -> tuple[BackendProfile, ...]:
    if isinstance(data, list):
        data = {"profiles": data}
    try:
        parsed = _ProfilesFileModel.model_validate(data or {})
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc
    return tuple(parsed.profiles)


def parse_settings(data: Any) -> DispatchSettings:
    try:
        return DispatchSettings.model_validate(data or {})
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc


def profiles_path(config_dir: str, use_dummy: bool = False) -> str:
    return os.path.join(config_dir, DUMMY_PROFILES_FILE if use_dummy else PROFILES_FILE)


def load_config(config_dir: str, use_dummy: bool = False) -> LoadedConfig:
    prof_path = profiles_path(config_dir, use_dummy)
    try:
        with open(prof_path, "rb") as f:
            prof_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"{os.path.basename(prof_path)}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"cannot read {prof_path}: {exc.strerror or exc}") from exc
    profiles = parse_profiles(prof_data)
    settings_path = os.path.join(config_dir, SETTINGS_FILE)
    mtimes = {"profiles": os.stat(prof_path).st_mtime}
    watch_paths = [prof_path]
    if os.path.exists(settings_path):
        try:
            with open(settings_path, "r", encoding="utf-8") as f:
                sdata = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"{SETTINGS_FILE}: {exc}") from exc
        settings = parse_settings(sdata)
        mtimes["settings"] = os.stat(settings_path).st_mtime
        watch_paths.append(settings_path)
    else:
        settings = DispatchSettings()
    return LoadedConfig(
        profiles=profiles,
        settings=settings,
        mtimes=mtimes,
        watch_paths=tuple(watch_paths),
    )


class ProfileStore:
    """Profile list backed by the config directory, reloaded when the files change."""

    def __init__(
        self,
        config_dir: str,
        *,
        use_dummy: bool = False,
        loaded: LoadedConfig | None = None,
    ):
        self._config_dir = config_dir
        self._use_dummy = use_dummy
        if loaded is None:
            loaded = load_config(config_dir, use_dummy=use_dummy)
        self._apply(loaded)

    def _apply(self, loaded: LoadedConfig) -> None:
        self._profiles = loaded.profiles
        self.settings = loaded.settings
        self._mtimes = dict(loaded.mtimes)

    @property
    def profiles(self) -> tuple[BackendProfile, ...]:
        return self._profiles

    def __call__(self) -> Sequence[BackendProfile]:
        return self._profiles

    def refresh(self) -> bool:
        prof_path = profiles_path(self._config_dir, self._use_dummy)
        settings_path = os.path.join(self._config_dir, SETTINGS_FILE)
        try:
            profiles_mtime = os.stat(prof_path).st_mtime
        except FileNotFoundError:
            return False
        try:
            settings_mtime: float | None = os.stat(settings_path).st_mtime
        except FileNotFoundError:
            settings_mtime = None
        if (
            profiles_mtime == self._mtimes.get("profiles")
            and settings_mtime == self._mtimes.get("settings")
        ):
            return False
        self._apply(load_config(self._config_dir, use_dummy=self._use_dummy))
        return True
