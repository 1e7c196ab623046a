"""Configuration package for the payment relay."""
from .settings import CheckoutFlow, Settings, get_settings

__all__ = ["CheckoutFlow", "Settings", "get_settings"]
