"""Single-page HTML frontend served at the application root."""

from __future__ import annotations

from functools import lru_cache
from importlib.resources import files

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

router = APIRouter()


@lru_cache(maxsize=1)
def load_page() -> str:
    """Read the bundled search page once per process."""
    return files("filescout.web").joinpath("templates").joinpath("index.html").read_text(encoding="utf-8")


@router.get("/", response_class=HTMLResponse, include_in_schema=False)
async def search_page() -> HTMLResponse:
    return HTMLResponse(content=load_page())
