"""Routers package."""

from . import (
    health,
    tts,
    account,
    billing,
)
