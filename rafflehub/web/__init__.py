"""HTTP surface of the raffle service (Flask)."""

from .app import create_app

__all__ = ["create_app"]
