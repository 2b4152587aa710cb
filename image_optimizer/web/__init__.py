"""HTTP interface for the Image Optimizer service."""

from .server import create_app

__all__ = ["create_app"]
