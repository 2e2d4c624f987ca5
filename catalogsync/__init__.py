"""Local-first catalog synchronisation for IPTV providers."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = ["app", "create_app"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        module = import_module("catalogsync.main")
        return getattr(module, name)
    raise AttributeError(f"module 'catalogsync' has no attribute {name}")
