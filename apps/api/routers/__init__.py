"""Routers package."""

from . import (
    health,
    media,
    search,
    keywords,
)
