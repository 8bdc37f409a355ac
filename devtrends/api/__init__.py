"""
HTTP surface for the DevTrends AI layer.

Exports:
    create_app: FastAPI application factory
    Container / build_container / get_container: dependency wiring
"""

from __future__ import annotations

from .app import create_app
from .container import Container, build_container, get_container

__all__ = ["create_app", "Container", "build_container", "get_container"]
