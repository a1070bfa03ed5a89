from roster.routes.ranks import router as ranks_router
from roster.routes.promotions import router as promotions_router, bot_router
from roster.routes.users import router as users_router, admin_router as admin_users_router

__all__ = [
    "ranks_router",
    "promotions_router",
    "bot_router",
    "users_router",
    "admin_users_router",
]
