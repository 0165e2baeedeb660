"""Connection profile configuration loading helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomllib

from pydantic import BaseModel, Field, SecretStr, ValidationError

from .models import ConnectionTarget

CONFIG_FILE = Path.home() / ".config" / "sturdydb" / "config.toml"


class ProfileConfig(BaseModel):
    """Connection profile stored in config.toml."""

    name: str
    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: SecretStr | None = None
    autoreconnect: bool = True
    driver_options: dict[str, Any] = Field(default_factory=dict)

    def to_target(self) -> ConnectionTarget:
        """Runtime connection target for this profile."""

        return ConnectionTarget(
            dsn=self.dsn,
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password.get_secret_value() if self.password else None,
        )

    def policy_options(self) -> dict[str, Any]:
        return {"autoreconnect": self.autoreconnect}


class SturdyConfig(BaseModel):
    """Shape of the configuration file."""

    profiles: list[ProfileConfig] = Field(default_factory=list)
    default_profile: str | None = None

    def profile(self, name: str | None = None) -> ProfileConfig:
        """Return the named profile, the default one, or the first one."""

        wanted = name or self.default_profile
        if wanted is None:
            if not self.profiles:
                raise KeyError("No connection profiles configured.")
            return self.profiles[0]
        for profile in self.profiles:
            if profile.name == wanted:
                return profile
        raise KeyError(f"Profile '{wanted}' not found.")

    def with_default_profile(self, name: str) -> SturdyConfig:
        """Return a copy with the default profile updated."""

        return self.model_copy(update={"default_profile": name})


def load_config(path: Path | None = None) -> SturdyConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return SturdyConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return SturdyConfig()

    profiles: list[ProfileConfig] = []
    for entry in data.get("profiles", []):
        try:
            profiles.append(ProfileConfig(**entry))
        except ValidationError:
            continue
    default_profile = data.get("default_profile")
    return SturdyConfig(
        profiles=profiles,
        default_profile=default_profile if isinstance(default_profile, str) else None,
    )


def _read_config_file(path: Path) -> dict[str, Any]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, Any] = {}
    default_profile = raw.get("default_profile")
    if isinstance(default_profile, str):
        data["default_profile"] = default_profile
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        data["profiles"] = [
            profile
            for profile in profiles
            if isinstance(profile, dict) and isinstance(profile.get("name"), str)
        ]
    return data


__all__ = ["CONFIG_FILE", "ProfileConfig", "SturdyConfig", "load_config"]
