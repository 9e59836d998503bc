"""Configuration and application setup for the passkey server."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Mapping, Optional

from flask import Flask, current_app
from flask_cors import CORS

from .bridge import MAX_TOKEN_TTL, IdentityBridge
from .ceremony import CeremonyCoordinator
from .sessions import SessionStore
from .storage import CredentialStore, create_store
from .verifier import WebAuthnVerifier

_ENV_PREFIX = "PASSKEY_BRIDGE_"
_EXTENSION_KEY = "passkey_bridge"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    raw_value = os.environ.get(_ENV_PREFIX + name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip()


def _env_int(name: str, default: int) -> int:
    raw_value = _env(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw_value!r}") from exc


def _parse_list(raw_value: Optional[str]) -> List[str]:
    """Split a comma, semicolon or newline separated list."""

    if raw_value is None:
        return []
    components = re.split(r"[,;\n]+", raw_value)
    return [component.strip() for component in components if component.strip()]


app = Flask(__name__)

_DEFAULT_RP_ID = _env("RP_ID", "localhost")
_DEFAULT_ORIGINS = _parse_list(_env("ORIGIN")) or [f"http://{_DEFAULT_RP_ID}:9200"]

app.secret_key = _env("SECRET_KEY") or os.urandom(32)  # Used for session.
app.config.setdefault("RP_ID", _DEFAULT_RP_ID)
app.config.setdefault("RP_NAME", _env("RP_NAME", "Passkey Bridge"))
app.config.setdefault("EXPECTED_ORIGINS", _DEFAULT_ORIGINS)
app.config.setdefault("CORS_ORIGINS", _parse_list(_env("CORS_ORIGINS")) or _DEFAULT_ORIGINS)
app.config.setdefault("SESSION_MAX_AGE", _env_int("SESSION_MAX_AGE", 3600))
app.config.setdefault("CHALLENGE_TTL", _env_int("CHALLENGE_TTL", 300))
app.config.setdefault("USER_VERIFICATION", _env("USER_VERIFICATION", "preferred"))
app.config.setdefault("RESIDENT_KEY", _env("RESIDENT_KEY", "preferred"))
app.config.setdefault("AUTHENTICATOR_ATTACHMENT", _env("AUTHENTICATOR_ATTACHMENT"))
app.config.setdefault("CREDENTIAL_STORE", _env("CREDENTIAL_STORE", "memory"))
app.config.setdefault("SERVICE_ACCOUNT", _env("SERVICE_ACCOUNT"))
app.config.setdefault("TOKEN_TTL", _env_int("TOKEN_TTL", MAX_TOKEN_TTL))

app.config.update(
    PERMANENT_SESSION_LIFETIME=timedelta(seconds=app.config["SESSION_MAX_AGE"]),
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
)

CORS(app, origins=app.config["CORS_ORIGINS"], supports_credentials=True)


@dataclass
class Services:
    coordinator: CeremonyCoordinator
    sessions: SessionStore

    @property
    def store(self) -> CredentialStore:
        return self.coordinator.store


def build_verifier(config: Mapping[str, Any]) -> WebAuthnVerifier:
    return WebAuthnVerifier(
        config["RP_ID"],
        config["RP_NAME"],
        config["EXPECTED_ORIGINS"],
        user_verification=config.get("USER_VERIFICATION"),
        resident_key=config.get("RESIDENT_KEY"),
        authenticator_attachment=config.get("AUTHENTICATOR_ATTACHMENT"),
    )


def build_bridge(config: Mapping[str, Any]) -> Optional[IdentityBridge]:
    path = config.get("SERVICE_ACCOUNT")
    if not path:
        return None
    return IdentityBridge.from_service_account_file(path, ttl=config["TOKEN_TTL"])


def build_services(
    config: Mapping[str, Any],
    *,
    store: Optional[CredentialStore] = None,
    bridge: Optional[IdentityBridge] = None,
) -> Services:
    """Wire the coordinator and session store described by ``config``."""

    coordinator = CeremonyCoordinator(
        build_verifier(config),
        store if store is not None else create_store(config.get("CREDENTIAL_STORE")),
        challenge_ttl=config.get("CHALLENGE_TTL") or None,
        bridge=bridge if bridge is not None else build_bridge(config),
    )
    return Services(coordinator=coordinator, sessions=SessionStore(config.get("SESSION_MAX_AGE")))


def install_services(target: Flask, services: Services) -> Services:
    target.extensions[_EXTENSION_KEY] = services
    return services


def get_services() -> Services:
    services = current_app.extensions.get(_EXTENSION_KEY)
    if services is None:
        services = install_services(current_app, build_services(current_app.config))
        current_app.logger.info(
            "Passkey services ready for RP %s (origins: %s, bridge %s)",
            current_app.config["RP_ID"],
            ", ".join(current_app.config["EXPECTED_ORIGINS"]),
            "enabled" if services.coordinator.bridge is not None else "disabled",
        )
    return services


__all__ = [
    "Services",
    "app",
    "build_bridge",
    "build_services",
    "build_verifier",
    "get_services",
    "install_services",
]
