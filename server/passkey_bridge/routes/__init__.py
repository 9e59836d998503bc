"""Route registrations for the passkey server."""

# Import submodules to register routes via decorators.
from . import ceremony  # noqa: F401
from . import general  # noqa: F401

__all__ = ["ceremony", "general"]
