"""OnceOnly HTTP entry point."""

from onceonly.api.main import create_app

__all__ = ["create_app"]
