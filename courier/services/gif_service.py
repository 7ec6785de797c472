"""Thin proxy over the GIF provider's search and trending endpoints."""
import logging
from typing import Any, Dict, List, Optional

import httpx

from courier.core.config import settings
from courier.core.errors import UnavailableError, ValidationError

logger = logging.getLogger(__name__)

MAX_GIF_RESULTS = 20
GIF_TIMEOUT_SECONDS = 5.0


def _to_gif(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    images = item.get("images") or {}
    full = images.get("fixed_height") or {}
    preview = images.get("fixed_height_small") or full
    url = full.get("url")
    if not url:
        return None
    return {
        "id": item.get("id"),
        "title": item.get("title") or "GIF",
        "url": url,
        "preview_url": preview.get("url") or url,
        "width": full.get("width"),
        "height": full.get("height"),
    }


async def _fetch(path: str, params: Dict[str, Any]) -> Dict[str, Any]:
    query = {"api_key": settings.GIPHY_API_KEY, "rating": "g", **params}
    try:
        async with httpx.AsyncClient(timeout=GIF_TIMEOUT_SECONDS) as client:
            response = await client.get(f"{settings.GIPHY_BASE_URL}/{path}", params=query)
    except httpx.HTTPError as exc:
        logger.warning("GIF provider request failed: %s", exc)
        raise UnavailableError("GIF search is unavailable") from exc
    if response.is_error:
        logger.warning("GIF provider returned %s", response.status_code)
        raise UnavailableError("GIF search is unavailable")
    try:
        return response.json()
    except ValueError as exc:
        raise UnavailableError("GIF search is unavailable") from exc


def _clamp(limit: int) -> int:
    return max(1, min(limit, MAX_GIF_RESULTS))


async def search_gifs(query: str, limit: int = MAX_GIF_RESULTS, offset: int = 0) -> Dict[str, Any]:
    term = query.strip()
    if not term:
        raise ValidationError("Search query required", code="missing_query")
    body = await _fetch(
        "search",
        {"q": term, "limit": _clamp(limit), "offset": max(0, offset), "lang": "en"},
    )
    gifs: List[Dict[str, Any]] = [gif for gif in map(_to_gif, body.get("data") or []) if gif]
    total = (body.get("pagination") or {}).get("total_count", len(gifs))
    return {"gifs": gifs, "total": total}


async def trending_gifs(limit: int = MAX_GIF_RESULTS) -> Dict[str, Any]:
    body = await _fetch("trending", {"limit": _clamp(limit)})
    gifs = [gif for gif in map(_to_gif, body.get("data") or []) if gif]
    return {"gifs": gifs}
