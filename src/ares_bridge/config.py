"""Runtime configuration read from the environment.

A `.env` file in the working directory is loaded first (values already set in
the process environment win). Only the Evolution transport settings are
required; everything else has the defaults the service has always shipped with.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import load_dotenv


class ConfigError(RuntimeError):
    """Raised when an environment variable is missing or malformed."""


_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EvolutionSettings:
    base_url: str
    instance: str
    api_key: str
    webhook_secret: str = ""
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class Settings:
    backend_url: str
    webhook_secret: str
    authorized_chat_id: str
    port: int
    auth_state_dir: str
    reconnect_delay_seconds: float
    relay_timeout_seconds: float
    logout_on_shutdown: bool
    log_level: str
    evolution: EvolutionSettings

    def startup_warnings(self) -> list[tuple[str, str]]:
        """(level, message) pairs for settings that let the service start but not work."""
        problems: list[tuple[str, str]] = []
        if not self.webhook_secret:
            problems.append(("error", "ARES_WEBHOOK_SECRET not configured"))
        if not self.authorized_chat_id:
            problems.append(
                ("warning", "GRUPO_TECNICO_ID not configured; every inbound message will be dropped")
            )
        if not self.evolution.webhook_secret:
            problems.append(
                ("warning", "EVOLUTION_WEBHOOK_SECRET not configured; evolution webhooks are not authenticated")
            )
        return problems


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    return value


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in _TRUTHY


def load_evolution_settings(env: Mapping[str, str]) -> EvolutionSettings:
    """Evolution API settings.

    Required: EVOLUTION_BASE_URL, EVOLUTION_INSTANCE, EVOLUTION_API_KEY.
    Optional: EVOLUTION_WEBHOOK_SECRET, EVOLUTION_TIMEOUT_SECONDS.
    """
    base_url = env.get("EVOLUTION_BASE_URL", "")
    instance = env.get("EVOLUTION_INSTANCE", "")
    api_key = env.get("EVOLUTION_API_KEY", "")

    if not base_url or not instance or not api_key:
        raise ConfigError(
            "Missing Evolution config: EVOLUTION_BASE_URL, EVOLUTION_INSTANCE, EVOLUTION_API_KEY"
        )

    return EvolutionSettings(
        base_url=base_url.rstrip("/"),
        instance=instance,
        api_key=api_key,
        webhook_secret=env.get("EVOLUTION_WEBHOOK_SECRET", ""),
        timeout_seconds=_get_float(env, "EVOLUTION_TIMEOUT_SECONDS", 15.0),
    )


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from `env`, or from os.environ after loading `.env`."""
    if env is None:
        load_dotenv()
        env = os.environ

    return Settings(
        backend_url=env.get("ARES_API_URL", "http://localhost:3000").rstrip("/"),
        webhook_secret=env.get("ARES_WEBHOOK_SECRET", ""),
        authorized_chat_id=env.get("GRUPO_TECNICO_ID", ""),
        port=_get_int(env, "PORT", 3001),
        auth_state_dir=env.get("AUTH_STATE_DIR", "auth_info"),
        reconnect_delay_seconds=_get_float(env, "RECONNECT_DELAY_SECONDS", 5.0),
        relay_timeout_seconds=_get_float(env, "RELAY_TIMEOUT_SECONDS", 10.0),
        logout_on_shutdown=_get_bool(env, "LOGOUT_ON_SHUTDOWN", True),
        log_level=env.get("LOG_LEVEL", "INFO"),
        evolution=load_evolution_settings(env),
    )
