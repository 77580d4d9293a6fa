"""Cross-bank user administration core."""

from __future__ import annotations

from typing import Any

from .config import AdminConfig, ShardRegistry, load_config, resolve_config_path


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the administration API application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "AdminConfig",
    "ShardRegistry",
    "create_app",
    "load_config",
    "resolve_config_path",
]
