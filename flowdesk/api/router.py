from fastapi import APIRouter
from flowdesk.api.endpoints import history, query

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(query.router)
api_router.include_router(history.router)
