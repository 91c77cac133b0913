"""Routers package."""

from . import (
    health,
    uploads,
    assets,
    webhooks,
    admin,
)
