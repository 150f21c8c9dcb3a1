"""TikTok trends lite - anonymous search scraping API.

This module exposes a FastAPI application that searches public TikTok pages
in real-time. No database, cookie or background cache is involved: every
request fetches TikTok directly and returns normalised JSON.

Key features
------------
- Endpoint: GET /search
- Query parameters: q (required), max (1..100, default 50), country (default BR)
- One anonymous fetch of the search page; when it yields nothing, exactly one
  more fetch of the hashtag page (``/tag/<query>``)
- Response payload: ``{query, country, total, results}`` where each result is a
  normalised video (id, author, stats, music, hashtags, canonical url)
- Parser shared with unit tests (see search_parser)
"""

from __future__ import annotations

import logging
import os
import random
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple, Union

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from search_parser import (
    build_hashtag_url,
    build_search_url,
    extract_sigi_state,
    normalize_item_module,
)

logger = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)


# --------------------------------------------------------------------------- #
# Configuration
# --------------------------------------------------------------------------- #


class SearchConfig:
    """Runtime configuration (adjust values to suit deployment needs)."""

    API_TITLE = "tiktok-trends-lite"
    API_VERSION = "1.0.0"

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "3000"))

    TIMEOUT_SECONDS = 15.0
    MAX_REDIRECTS = 3
    DEFAULT_MAX_RESULTS = 50
    MAX_RESULTS = 100
    DEFAULT_COUNTRY = "BR"

    USAGE_HINT = "Use ?q=palavra para buscar no TikTok (ex: /search?q=dentista)"


USER_AGENTS: Tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_5) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/16.5 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:124.0) Gecko/20100101 Firefox/124.0",
)

WEBID_UPPER_BOUND = 10 ** 16


def pick_user_agent(rng: random.Random) -> str:
    return rng.choice(USER_AGENTS)


def make_webid_cookie(rng: random.Random) -> str:
    """Fake ``tt_webid_v2`` session cookie; it cuts down on some 403s."""
    return f"tt_webid_v2={rng.randrange(WEBID_UPPER_BOUND)};"


def build_request_headers(rng: random.Random) -> Dict[str, str]:
    return {
        "User-Agent": pick_user_agent(rng),
        "Accept-Language": "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7",
        "Referer": "https://www.tiktok.com/",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Cache-Control": "no-cache",
        "Cookie": make_webid_cookie(rng),
    }


class InvalidSearchQuery(Exception):
    """Raised when the search query is missing or blank."""


class TikTokFetchError(Exception):
    """Network failure, timeout or unexpected status while fetching a page."""


# --------------------------------------------------------------------------- #
# TikTok client
# --------------------------------------------------------------------------- #


class TikTokSearchClient:
    """Thin async HTTP client that fetches public TikTok pages anonymously."""

    def __init__(
        self,
        *,
        timeout: float,
        max_redirects: int,
        rng: Optional[random.Random] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._max_redirects = max_redirects
        self._rng = rng or random.Random()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                max_redirects=self._max_redirects,
                transport=self._transport,
                http2=True,
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch_html(self, url: str) -> str:
        await self.start()
        if self._client is None:
            raise TikTokFetchError("HTTP client not initialised")

        headers = build_request_headers(self._rng)
        logger.debug("Fetching TikTok page url=%s", url)
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("TikTok fetch failed url=%s error=%s", url, exc)
            raise TikTokFetchError(str(exc) or exc.__class__.__name__) from exc

        if not 200 <= response.status_code < 400:
            logger.warning("TikTok fetch failed url=%s status=%s", url, response.status_code)
            raise TikTokFetchError(f"Request failed with status code {response.status_code}")
        return response.text


class HtmlFetcher(Protocol):
    async def fetch_html(self, url: str) -> str: ...


# --------------------------------------------------------------------------- #
# Pydantic models for structured responses
# --------------------------------------------------------------------------- #


class MusicInfo(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None


class VideoStats(BaseModel):
    views: Optional[int] = None
    likes: Optional[int] = None
    comments: Optional[int] = None
    shares: Optional[int] = None
    bookmarks: Optional[int] = None


class VideoRecord(BaseModel):
    id: str = ""
    title: str = ""
    author: str = ""
    url: str = Field(min_length=1)
    cover: Optional[str] = None
    duration: Optional[Union[int, float]] = None
    music: MusicInfo = Field(default_factory=MusicInfo)
    stats: VideoStats = Field(default_factory=VideoStats)
    publishedAt: Optional[str] = None
    hashtags: List[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    query: str
    country: str
    total: int
    results: List[VideoRecord]


# --------------------------------------------------------------------------- #
# Search orchestration
# --------------------------------------------------------------------------- #


def clamp_max_count(raw: Any) -> int:
    """Parse the ``max`` parameter: default 50 when missing or not numeric, then clamp to 1..100."""
    if raw is None or raw == "":
        return SearchConfig.DEFAULT_MAX_RESULTS
    try:
        value = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return SearchConfig.DEFAULT_MAX_RESULTS
    return max(1, min(value, SearchConfig.MAX_RESULTS))


async def _fetch_and_normalise(fetcher: HtmlFetcher, url: str, max_items: int) -> List[Dict[str, Any]]:
    html = await fetcher.fetch_html(url)
    return normalize_item_module(extract_sigi_state(html), max_items)


async def search_videos(
    fetcher: HtmlFetcher,
    query: Optional[str],
    max_count: Any = None,
    country: Optional[str] = None,
) -> SearchResponse:
    q = (query or "").strip()
    if not q:
        raise InvalidSearchQuery("Parâmetro q é obrigatório. Ex.: /search?q=dentista")
    max_items = clamp_max_count(max_count)
    country = country or SearchConfig.DEFAULT_COUNTRY

    results = await _fetch_and_normalise(fetcher, build_search_url(q, country), max_items)

    fell_back = False
    if not results:
        fell_back = True
        logger.info("Search page empty, trying hashtag page query=%r", q)
        results = await _fetch_and_normalise(fetcher, build_hashtag_url(q, country), max_items)

    logger.info(
        "Search complete query=%r country=%s total=%s hashtag_fallback=%s",
        q,
        country,
        len(results),
        fell_back,
    )
    return SearchResponse(
        query=q,
        country=country,
        total=len(results),
        results=[VideoRecord(**record) for record in results],
    )


# --------------------------------------------------------------------------- #
# FastAPI application setup
# --------------------------------------------------------------------------- #


tiktok_client: Optional[TikTokSearchClient] = None


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    global tiktok_client
    tiktok_client = TikTokSearchClient(
        timeout=SearchConfig.TIMEOUT_SECONDS,
        max_redirects=SearchConfig.MAX_REDIRECTS,
    )
    await tiktok_client.start()
    logger.info("Startup complete. TikTok client ready.")
    try:
        yield
    finally:
        await tiktok_client.close()
        tiktok_client = None
        logger.info("TikTok client closed.")


app = FastAPI(
    title=SearchConfig.API_TITLE,
    version=SearchConfig.API_VERSION,
    description="Anonymous TikTok search scraping API",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1024)


def get_search_client() -> HtmlFetcher:
    if not tiktok_client:
        raise HTTPException(
            status_code=500,
            detail={"error": "SERVER_NOT_READY", "message": "TikTok client not initialised"},
        )
    return tiktok_client


@app.exception_handler(InvalidSearchQuery)
async def invalid_query_handler(request: Request, exc: InvalidSearchQuery) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(TikTokFetchError)
async def fetch_error_handler(request: Request, exc: TikTokFetchError) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": "Falha ao buscar vídeos", "details": str(exc)},
    )


# --------------------------------------------------------------------------- #
# Routes
# --------------------------------------------------------------------------- #


@app.get("/", response_class=PlainTextResponse, tags=["System"])
async def root() -> str:
    return SearchConfig.USAGE_HINT


@app.get("/search", response_model=SearchResponse, tags=["TikTok"])
async def search(
    q: Optional[str] = Query(None, description="Search term, e.g. dentista or #gatos"),
    max_count: Optional[str] = Query(None, alias="max", description="Max results (1..100, default 50)"),
    country: str = Query(SearchConfig.DEFAULT_COUNTRY, description="Country hint; BR switches lang to pt-BR"),
    fetcher: HtmlFetcher = Depends(get_search_client),
) -> JSONResponse:
    start_time = time.perf_counter()
    response_payload = await search_videos(fetcher, q, max_count, country)

    processing_time_ms = (time.perf_counter() - start_time) * 1000
    json_response = JSONResponse(content=response_payload.model_dump())
    json_response.headers["X-Processing-Time-ms"] = f"{processing_time_ms:.2f}"
    return json_response


# --------------------------------------------------------------------------- #
# Application entrypoint for local development
# --------------------------------------------------------------------------- #


if __name__ == "__main__":
    import uvicorn

    logger.info("tiktok-trends-lite running on port %s", SearchConfig.PORT)
    uvicorn.run(
        "search_api:app",
        host=SearchConfig.HOST,
        port=SearchConfig.PORT,
        log_level="info",
        reload=False,
    )
