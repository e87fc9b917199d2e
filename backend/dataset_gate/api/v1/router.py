"""API v1 router aggregator.

All v1 endpoint routers are included here, mounted at /api/v1.
"""

from fastapi import APIRouter

from dataset_gate.api.v1 import admin, downloads, orders, webhooks

router = APIRouter()

# =============================================================================
# Public
# =============================================================================

router.include_router(orders.router, prefix="/orders", tags=["orders"])
router.include_router(downloads.router, prefix="/downloads", tags=["downloads"])

# =============================================================================
# Gateway callbacks
# =============================================================================

router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# =============================================================================
# Admin
# =============================================================================

router.include_router(admin.router, prefix="/admin", tags=["admin"])
