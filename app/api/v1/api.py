from fastapi import APIRouter
from app.api.v1.endpoints import auth, users, notes, categories, sharing, export, templates, reports, ws

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["authentication"])
api_router.include_router(users.router, prefix="/users", tags=["users"])
api_router.include_router(notes.router, prefix="/notes", tags=["notes"])
api_router.include_router(categories.router, prefix="/categories", tags=["categories"])
api_router.include_router(sharing.router, prefix="/sharing", tags=["sharing"])
api_router.include_router(export.router, prefix="/export", tags=["export"])
api_router.include_router(templates.router, prefix="/templates", tags=["templates"])
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])
api_router.include_router(ws.router, tags=["realtime"])
