"""HTTP data proxy."""

from .app import build_cache, create_app, run_server

__all__ = ["build_cache", "create_app", "run_server"]
