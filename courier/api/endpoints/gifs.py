from fastapi import APIRouter, Depends

from courier.api.deps import get_current_user
from courier.models.user import User
from courier.services.gif_service import MAX_GIF_RESULTS, search_gifs, trending_gifs

router = APIRouter(prefix="/gifs", tags=["gifs"])


@router.get("/search")
async def gif_search(
    q: str = "",
    limit: int = MAX_GIF_RESULTS,
    offset: int = 0,
    current_user: User = Depends(get_current_user),
):
    return await search_gifs(q, limit=limit, offset=offset)


@router.get("/trending")
async def gif_trending(limit: int = MAX_GIF_RESULTS, current_user: User = Depends(get_current_user)):
    return await trending_gifs(limit=limit)
