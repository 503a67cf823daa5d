"""Importable alias for the Zeestream FastAPI app."""

from __future__ import annotations

from app import __version__, app, create_app

__all__ = ["__version__", "app", "create_app"]
