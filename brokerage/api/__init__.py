"""API router registry used by the app factory.

Operator routers mount under ``API_PREFIX``; the API-key execution router
carries its own ``/v1`` prefix and mounts at the root.
"""

from __future__ import annotations

from fastapi import APIRouter

from . import (
    agent_economy,
    api_keys,
    billing,
    brain,
    demand_radar,
    execution,
    health,
    payments,
    scheduler,
)

API_PREFIX = "/api/v1"

API_ROUTERS: tuple[APIRouter, ...] = (
    health.router,
    demand_radar.router,
    agent_economy.router,
    billing.router,
    scheduler.router,
    brain.router,
    payments.router,
    api_keys.router,
)

ROOT_ROUTERS: tuple[APIRouter, ...] = (
    execution.router,
)

__all__ = ["API_PREFIX", "API_ROUTERS", "ROOT_ROUTERS"]
