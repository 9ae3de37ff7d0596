# api/__init__.py
from api.server import (
    create_app,
    build_engine,
    ServerConfig,
)

__all__ = [
    "create_app",
    "build_engine",
    "ServerConfig",
]
