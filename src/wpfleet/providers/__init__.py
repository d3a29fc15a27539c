"""Provider interfaces for wpfleet."""
from __future__ import annotations

from .docker import (
    ContainerState,
    ContainerStats,
    DockerError,
    DockerProvider,
)
from .wordpress import PluginInfo, WordPressError, WordPressProvider

__all__ = [
    "ContainerState",
    "ContainerStats",
    "DockerError",
    "DockerProvider",
    "PluginInfo",
    "WordPressError",
    "WordPressProvider",
]
