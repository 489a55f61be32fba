from fastapi import APIRouter
from app.api.v1.routes import subscriptions, courses, webhooks, admin

api_router = APIRouter()

api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(courses.router, prefix="/courses", tags=["courses"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
