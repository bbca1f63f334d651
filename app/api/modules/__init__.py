from fastapi import APIRouter

from app.api.modules.subscriptions.routes.subscription_route import router as subscription_router

router = APIRouter()
router.include_router(subscription_router)
