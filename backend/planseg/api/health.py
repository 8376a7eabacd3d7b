"""Health check + meta endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from planseg import __version__
from planseg.engine.categories import CategoryTable
from planseg.models.responses import CategoriesResponse, CategoryInfo, HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=__version__,
        backend="rules",
        categories=len(CategoryTable.default()),
    )


@router.get("/categories", response_model=CategoriesResponse)
async def categories() -> CategoriesResponse:
    table = CategoryTable.default()
    return CategoriesResponse(
        categories=[
            CategoryInfo(code=c.code, name=c.name, label=c.label, color=c.color) for c in table
        ]
    )
