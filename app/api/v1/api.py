from fastapi import APIRouter
from app.api.v1.endpoints import auth, emails, jobs

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(auth.router)
api_router.include_router(emails.router)
api_router.include_router(jobs.router)
