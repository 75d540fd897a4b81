"""
Luna Assessment — Main API Router

Aggregates all sub-routers so that ``app.main`` can mount the entire API
surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import assessments

router = APIRouter()

router.include_router(assessments.router, prefix="/assessments", tags=["Assessments"])
