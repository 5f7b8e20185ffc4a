"""Personal and small-business finance tracker backend."""
from .api import app

__all__ = ["app"]
