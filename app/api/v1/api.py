from fastapi import APIRouter
from app.api.v1.billing import routes as billing

api_router = APIRouter()
api_router.include_router(billing.router, prefix="/billing", tags=["billing"])
