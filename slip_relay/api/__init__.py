"""HTTP surface of the relay."""
from .main import create_app

__all__ = ["create_app"]
