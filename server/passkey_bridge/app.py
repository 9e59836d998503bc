"""Application entry point for the passkey server."""
from __future__ import annotations

import os

from .config import app

# Import the route modules so their decorators register endpoints with Flask.
from .routes import ceremony, general  # noqa: F401


def main() -> None:
    # Plain HTTP is only acceptable for a localhost relying party; browsers
    # refuse WebAuthn on other insecure origins.
    app.run(
        host=os.environ.get("PASSKEY_BRIDGE_HOST", "localhost"),
        port=int(os.environ.get("PASSKEY_BRIDGE_PORT", "3000")),
        debug=os.environ.get("PASSKEY_BRIDGE_DEBUG", "").lower() in {"1", "true", "yes", "on"},
    )


__all__ = ["app", "main"]


if __name__ == "__main__":  # pragma: no cover - convenience script entry point.
    main()
