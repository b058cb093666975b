"""HTTP surface for the generation gateway."""

from .server import app

__all__ = ["app"]
