"""OpenCode provider package."""

from src.providers.opencode.client import OpenCodeClient
from src.providers.opencode.provider import OpenCodeProvider

__all__ = ["OpenCodeClient", "OpenCodeProvider"]
