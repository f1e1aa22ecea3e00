"""Policy administration platform integration."""

from .client import PolicyServiceClient

__all__ = ["PolicyServiceClient"]
