# Generic router module for the database operations API
from fastapi import APIRouter

from dbops.routers.database import router as database_router

router = APIRouter()

router.include_router(database_router)
