"""HTTP API for solesync."""

from solesync.api.app import create_app

__all__ = ["create_app"]
