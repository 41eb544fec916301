# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Agent Mesh - Filesystem-based coordination for agents sharing a workspace."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("agent-mesh")
except PackageNotFoundError:  # pragma: no cover - fallback for dev
    __version__ = "0.1.0"
