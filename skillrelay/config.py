"""
skillrelay.config

Source configuration for the skill relay: which local directories and remote repository
references are active, plus the persisted per-skill invocation overrides, static mode flag,
and remote owner allow-lists.

Directory tiers, in strict priority order:
  1. cli        positional command-line arguments
  2. env        the SKILLS_DIR environment variable
  3. persisted  `skillDirectories` in <config dir>/config.json

The first tier that yields at least one entry is the active tier. Lower tiers are not merged
into the active set, but every tier stays readable for display. Bundled skills shipped with the
package are appended after the active tier and never take part in precedence.

Every tier accepts comma-separated lists; segments are trimmed, empty segments dropped, local
paths made absolute, remote references kept as given, and duplicates removed.
"""

from __future__ import annotations

import json
import logging
import math
import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from skillrelay import SERVER_NAME
from skillrelay.remote_spec import is_remote_reference

logger = logging.getLogger(f"{SERVER_NAME}.config")

# --- Paths & constants ---
CONFIG_DIR_ENV = "SKILLRELAY_CONFIG_DIR"
SKILLS_DIR_ENV = "SKILLS_DIR"
CACHE_DIR_ENV = "SKILLS_CACHE_DIR"
TOKEN_ENV = "GITHUB_TOKEN"
POLL_INTERVAL_ENV = "GITHUB_POLL_INTERVAL"
ALLOWED_ORGS_ENV = "GITHUB_ALLOWED_ORGS"
ALLOWED_USERS_ENV = "GITHUB_ALLOWED_USERS"

DEFAULT_CONFIG_DIR = Path.home() / ".skillrelay"
CONFIG_FILE_NAME = "config.json"
CACHE_DIR_NAME = "github-cache"
DEFAULT_POLL_INTERVAL = 300.0
PATH_LIST_SEPARATOR = ","
BUNDLED_SKILLS_DIR = Path(__file__).resolve().parent / "bundled_skills"

INVOCATION_SETTINGS = ("model", "user")
OWNER_KINDS = ("org", "user")


class ConfigurationError(ValueError):
    """A configuration edit was rejected (duplicate, missing path, unknown entry or setting)."""


class Tier(str, Enum):
    CLI = "cli"
    ENV = "env"
    PERSISTED = "persisted"


class SourceKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


def source_kind(entry: str) -> SourceKind:
    return SourceKind.REMOTE if is_remote_reference(entry) else SourceKind.LOCAL


def normalize_entry(entry: str) -> str:
    """
    function_purpose: Normalize one configured entry.

    Remote references are kept verbatim (validated at sync time); local paths are expanded
    and made absolute.
    """
    entry = entry.strip()
    if is_remote_reference(entry):
        return entry
    return os.path.abspath(os.path.expanduser(entry))


def _dedupe(entries: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for e in entries:
        if e not in seen:
            seen.add(e)
            out.append(e)
    return out


def split_path_list(raw: str | None) -> list[str]:
    """
    function_purpose: Parse a comma-separated path/reference list.

    Segments are trimmed, empty segments dropped, entries normalized and deduplicated
    (first occurrence kept).
    """
    if not raw:
        return []
    segments = (seg.strip() for seg in raw.split(PATH_LIST_SEPARATOR))
    return _dedupe(normalize_entry(seg) for seg in segments if seg)


def _split_names(raw: str | None) -> list[str]:
    if not raw:
        return []
    return _dedupe(seg.strip() for seg in raw.split(PATH_LIST_SEPARATOR) if seg.strip())


# --- Persisted settings ---
@dataclass
class InvocationOverride:
    """Per-skill override of the frontmatter invocation defaults. None means not overridden."""

    model: bool | None = None
    user: bool | None = None

    def is_empty(self) -> bool:
        return self.model is None and self.user is None

    def to_dict(self) -> dict[str, bool]:
        data: dict[str, bool] = {}
        if self.model is not None:
            data["model"] = self.model
        if self.user is not None:
            data["user"] = self.user
        return data

    @classmethod
    def from_dict(cls, data: Any) -> InvocationOverride:
        if not isinstance(data, dict):
            return cls()
        model = data.get("model")
        user = data.get("user")
        return cls(
            model=model if isinstance(model, bool) else None,
            user=user if isinstance(user, bool) else None,
        )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v.strip()]


@dataclass
class PersistedSettings:
    """Contents of config.json. Field names map to the camelCase keys on disk."""

    skill_directories: list[str] = field(default_factory=list)
    static_mode: bool = False
    invocation_overrides: dict[str, InvocationOverride] = field(default_factory=dict)
    remote_allowed_orgs: list[str] = field(default_factory=list)
    remote_allowed_users: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> PersistedSettings:
        """
        function_purpose: Build settings from decoded JSON, dropping unknown keys and values of
        the wrong type instead of failing.
        """
        if not isinstance(data, dict):
            return cls()

        overrides: dict[str, InvocationOverride] = {}
        raw_overrides = data.get("skillInvocationOverrides")
        if isinstance(raw_overrides, dict):
            for name, raw in raw_overrides.items():
                override = InvocationOverride.from_dict(raw)
                if isinstance(name, str) and not override.is_empty():
                    overrides[name] = override

        return cls(
            skill_directories=_dedupe(normalize_entry(p) for p in _string_list(data.get("skillDirectories"))),
            static_mode=data.get("staticMode") is True,
            invocation_overrides=overrides,
            remote_allowed_orgs=_string_list(data.get("remoteAllowedOrgs")),
            remote_allowed_users=_string_list(data.get("remoteAllowedUsers")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "skillDirectories": list(self.skill_directories),
            "staticMode": self.static_mode,
            "skillInvocationOverrides": {
                name: o.to_dict() for name, o in self.invocation_overrides.items() if not o.is_empty()
            },
            "remoteAllowedOrgs": list(self.remote_allowed_orgs),
            "remoteAllowedUsers": list(self.remote_allowed_users),
        }


def resolve_config_dir(environ: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if environ is None else environ
    env_dir = environ.get(CONFIG_DIR_ENV)
    return Path(env_dir).expanduser().resolve() if env_dir else DEFAULT_CONFIG_DIR


class SettingsStore:
    """
    Load/modify/save access to config.json.

    Every operation re-reads the file so edits made outside the process are picked up.
    A missing file behaves as all-empty defaults.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> SettingsStore:
        return cls(resolve_config_dir(environ) / CONFIG_FILE_NAME)

    def load(self) -> PersistedSettings:
        if not self.path.exists():
            return PersistedSettings()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to read config file %s: %s", self.path, e)
            return PersistedSettings()
        return PersistedSettings.from_dict(data)

    def save(self, settings: PersistedSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(settings.to_dict(), indent=2) + "\n", encoding="utf-8")
        logger.debug("Saved config file %s", self.path)

    # Directories
    def directories(self) -> list[str]:
        return self.load().skill_directories

    def add_directory(self, entry: str) -> str:
        """
        function_purpose: Append a local directory or remote reference to the persisted list.

        Local paths must exist and be directories. Remote references are accepted unchecked.
        Returns the normalized entry as stored.
        """
        if not entry or not entry.strip():
            raise ConfigurationError("Directory must be a non-empty string")
        normalized = normalize_entry(entry)
        if source_kind(normalized) is SourceKind.LOCAL:
            p = Path(normalized)
            if not p.exists():
                raise ConfigurationError(f"Directory does not exist: {normalized}")
            if not p.is_dir():
                raise ConfigurationError(f"Path is not a directory: {normalized}")

        settings = self.load()
        if normalized in settings.skill_directories:
            raise ConfigurationError(f"Already configured: {normalized}")
        settings.skill_directories.append(normalized)
        self.save(settings)
        logger.info("Added skill directory to config: %s", normalized)
        return normalized

    def remove_directory(self, entry: str) -> str:
        normalized = normalize_entry(entry)
        settings = self.load()
        if normalized not in settings.skill_directories:
            raise ConfigurationError(f"Not found in config: {normalized}")
        settings.skill_directories.remove(normalized)
        self.save(settings)
        logger.info("Removed skill directory from config: %s", normalized)
        return normalized

    # Invocation overrides
    def invocation_overrides(self) -> dict[str, InvocationOverride]:
        return self.load().invocation_overrides

    def set_invocation_override(self, skill_name: str, setting: str, value: bool) -> None:
        if setting not in INVOCATION_SETTINGS:
            raise ConfigurationError(
                f"Unknown invocation setting '{setting}', expected one of {', '.join(INVOCATION_SETTINGS)}"
            )
        settings = self.load()
        override = settings.invocation_overrides.setdefault(skill_name, InvocationOverride())
        setattr(override, setting, bool(value))
        self.save(settings)

    def clear_invocation_override(self, skill_name: str, setting: str | None = None) -> None:
        """
        function_purpose: Revert a skill to its frontmatter defaults.

        With a setting, only that flag is cleared; without one, both are. Empty overrides are
        removed from the file.
        """
        if setting is not None and setting not in INVOCATION_SETTINGS:
            raise ConfigurationError(
                f"Unknown invocation setting '{setting}', expected one of {', '.join(INVOCATION_SETTINGS)}"
            )
        settings = self.load()
        override = settings.invocation_overrides.get(skill_name)
        if override is None:
            return
        if setting is None:
            del settings.invocation_overrides[skill_name]
        else:
            setattr(override, setting, None)
            if override.is_empty():
                del settings.invocation_overrides[skill_name]
        self.save(settings)

    # Static mode
    def static_mode(self) -> bool:
        return self.load().static_mode

    def set_static_mode(self, enabled: bool) -> None:
        settings = self.load()
        settings.static_mode = bool(enabled)
        self.save(settings)

    # Remote allow-lists
    def _owner_list(self, settings: PersistedSettings, kind: str) -> list[str]:
        if kind == "org":
            return settings.remote_allowed_orgs
        if kind == "user":
            return settings.remote_allowed_users
        raise ConfigurationError(f"Unknown owner kind '{kind}', expected one of {', '.join(OWNER_KINDS)}")

    def allow_owner(self, kind: str, name: str) -> bool:
        """Add an org or user to the allow-list. Returns False when it was already present."""
        name = name.strip()
        if not name:
            raise ConfigurationError("Owner name must be a non-empty string")
        settings = self.load()
        owners = self._owner_list(settings, kind)
        if any(o.lower() == name.lower() for o in owners):
            return False
        owners.append(name)
        self.save(settings)
        return True

    def disallow_owner(self, kind: str, name: str) -> bool:
        """Remove an org or user from the allow-list. Returns False when it was not present."""
        settings = self.load()
        owners = self._owner_list(settings, kind)
        kept = [o for o in owners if o.lower() != name.strip().lower()]
        if len(kept) == len(owners):
            return False
        owners[:] = kept
        self.save(settings)
        return True


# --- Resolution ---
@dataclass(frozen=True)
class DirectoryEntry:
    path: str
    tier: Tier
    kind: SourceKind

    @property
    def valid(self) -> bool:
        """Local entries must exist; remote entries are validated at sync time."""
        return self.kind is SourceKind.REMOTE or Path(self.path).is_dir()

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "tier": self.tier.value, "kind": self.kind.value, "valid": self.valid}


@dataclass(frozen=True)
class SourceConfigState:
    directories: tuple[DirectoryEntry, ...]
    active_tier: Tier
    is_overridden: bool
    bundled_directory: Path | None = None

    @property
    def paths(self) -> list[str]:
        return [d.path for d in self.directories]

    def to_dict(self) -> dict[str, Any]:
        return {
            "directories": [d.to_dict() for d in self.directories],
            "activeTier": self.active_tier.value,
            "isOverridden": self.is_overridden,
            "bundledDirectory": str(self.bundled_directory) if self.bundled_directory else None,
        }


class SourceConfigResolver:
    """
    Resolves the active directory list from the cli, env and persisted tiers.

    cli_args are the raw positional arguments; each may itself be a comma-separated list.
    """

    def __init__(
        self,
        store: SettingsStore,
        cli_args: Sequence[str] = (),
        environ: Mapping[str, str] | None = None,
        bundled_dir: Path | None = BUNDLED_SKILLS_DIR,
    ) -> None:
        self.store = store
        self.cli_args = list(cli_args)
        self.environ = os.environ if environ is None else environ
        self.bundled_dir = bundled_dir

    def tier_entries(self, tier: Tier) -> list[str]:
        if tier is Tier.CLI:
            return _dedupe(e for arg in self.cli_args for e in split_path_list(arg))
        if tier is Tier.ENV:
            return split_path_list(self.environ.get(SKILLS_DIR_ENV))
        return self.store.directories()

    def _bundled(self) -> Path | None:
        if self.bundled_dir is not None and Path(self.bundled_dir).is_dir():
            return Path(self.bundled_dir)
        return None

    def resolve(self) -> SourceConfigState:
        """
        function_purpose: Compute the active directory set.

        The first tier with at least one entry wins outright; is_overridden is set whenever
        that tier is cli or env, meaning persisted edits are inert until those are cleared.
        """
        for tier in Tier:
            entries = self.tier_entries(tier)
            if entries:
                return SourceConfigState(
                    directories=tuple(DirectoryEntry(p, tier, source_kind(p)) for p in entries),
                    active_tier=tier,
                    is_overridden=tier is not Tier.PERSISTED,
                    bundled_directory=self._bundled(),
                )
        return SourceConfigState(
            directories=(),
            active_tier=Tier.PERSISTED,
            is_overridden=False,
            bundled_directory=self._bundled(),
        )

    def all_directories(self) -> list[DirectoryEntry]:
        """Every tier's entries for display, deduplicated across tiers (highest tier kept)."""
        seen: set[str] = set()
        out: list[DirectoryEntry] = []
        for tier in Tier:
            for p in self.tier_entries(tier):
                if p in seen:
                    continue
                seen.add(p)
                out.append(DirectoryEntry(p, tier, source_kind(p)))
        return out


# --- Remote settings ---
@dataclass(frozen=True)
class RemoteSettings:
    cache_dir: Path
    token: str | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    allowed_orgs: tuple[str, ...] = ()
    allowed_users: tuple[str, ...] = ()


def _parse_poll_interval(raw: str | None) -> float:
    if raw is None or not raw.strip():
        return DEFAULT_POLL_INTERVAL
    try:
        value = float(raw)
    except ValueError:
        value = math.nan
    if not math.isfinite(value):
        logger.warning("Ignoring invalid %s=%r, using %s", POLL_INTERVAL_ENV, raw, DEFAULT_POLL_INTERVAL)
        return DEFAULT_POLL_INTERVAL
    return max(value, 0.0)


def load_remote_settings(
    store: SettingsStore,
    environ: Mapping[str, str] | None = None,
) -> RemoteSettings:
    """
    function_purpose: Collect cache dir, token, polling interval and allow-lists.

    Allow-list environment variables, when set, replace the persisted lists.
    """
    environ = os.environ if environ is None else environ
    cache_env = environ.get(CACHE_DIR_ENV)
    cache_dir = (
        Path(cache_env).expanduser().resolve()
        if cache_env
        else resolve_config_dir(environ) / CACHE_DIR_NAME
    )
    settings = store.load()
    orgs = (
        _split_names(environ.get(ALLOWED_ORGS_ENV))
        if ALLOWED_ORGS_ENV in environ
        else settings.remote_allowed_orgs
    )
    users = (
        _split_names(environ.get(ALLOWED_USERS_ENV))
        if ALLOWED_USERS_ENV in environ
        else settings.remote_allowed_users
    )
    return RemoteSettings(
        cache_dir=cache_dir,
        token=environ.get(TOKEN_ENV) or None,
        poll_interval=_parse_poll_interval(environ.get(POLL_INTERVAL_ENV)),
        allowed_orgs=tuple(orgs),
        allowed_users=tuple(users),
    )
