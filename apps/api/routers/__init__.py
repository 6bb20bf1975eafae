"""Routers package."""

from . import (
    health,
    blob,
    callbacks,
    videos,
    worker,
)
