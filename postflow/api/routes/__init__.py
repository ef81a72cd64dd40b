from postflow.api.routes.admin import router as admin_router
from postflow.api.routes.billing import router as billing_router
from postflow.api.routes.webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "billing_router",
    "webhooks_router",
]
