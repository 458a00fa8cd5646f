from __future__ import annotations

"""
Aggregation point for the v1 API routers.

Usage in covercart.main:
    from covercart.routers import mount_v1
    mount_v1(app, base_prefix="/api/v1")
"""

from typing import List, Tuple

from fastapi import APIRouter, FastAPI

from covercart.core.logging import get_logger
from covercart.routers import admin, custom_orders, orders, shipments, shipping_admin, webhooks

logger = get_logger(__name__)

# (name, router); prefixes are relative and mounted under base_prefix
V1_ROUTERS: List[Tuple[str, APIRouter]] = [
    ("orders", orders.router),
    ("custom_orders", custom_orders.router),
    ("shipments", shipments.router),
    ("admin", admin.router),
    ("admin_shipping", shipping_admin.router),
    ("webhooks", webhooks.router),
]


def mount_v1(app: FastAPI, base_prefix: str = "/api/v1") -> List[str]:
    """Include every v1 router once; returns the mounted names."""
    mounted = getattr(app.state, "mounted_v1", None)
    if mounted is None:
        mounted = app.state.mounted_v1 = set()
    names: List[str] = []
    for name, router in V1_ROUTERS:
        if name in mounted:
            continue
        app.include_router(router, prefix=base_prefix)
        mounted.add(name)
        names.append(name)
    logger.info("v1_routers_mounted", prefix=base_prefix, routers=names)
    return names


__all__ = ["V1_ROUTERS", "mount_v1"]
