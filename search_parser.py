"""Standalone parsing helpers for TikTok search pages.

Kept separate from the FastAPI app so the extraction and normalisation logic
can be unit tested without the web stack:

- URL builders for the search page and the hashtag fallback page
- ``extract_sigi_state``: pull the ``SIGI_STATE`` JSON blob out of the HTML
- ``normalize_item_module``: turn ``SIGI_STATE.ItemModule`` into flat records

Nothing in here raises on bad upstream data. Missing or malformed payloads
degrade to ``None`` / empty lists.
"""

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

TIKTOK_BASE_URL = "https://www.tiktok.com"
SIGI_STATE_ID = "SIGI_STATE"
ITEM_MODULE_KEY = "ItemModule"

# Same unreserved set as JavaScript's encodeURIComponent
_URI_COMPONENT_SAFE = "!~*'()"


# --------------------------------------------------------------------------- #
# URL builders
# --------------------------------------------------------------------------- #


def language_for_country(country: Optional[str]) -> str:
    # country only steers the page language; it is not a hard filter without login
    if country and country.upper() == "BR":
        return "pt-BR"
    return "en"


def _encode_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def build_search_url(query: str, country: Optional[str]) -> str:
    """Public search page, e.g. https://www.tiktok.com/search?q=dentista&lang=pt-BR"""
    lang = language_for_country(country)
    return f"{TIKTOK_BASE_URL}/search?q={_encode_component(query)}&lang={lang}"


def build_hashtag_url(query: str, country: Optional[str]) -> str:
    """Tag page used as fallback, e.g. https://www.tiktok.com/tag/dentista?lang=pt-BR"""
    clean = query[1:] if query.startswith("#") else query
    clean = clean.strip()
    lang = language_for_country(country)
    return f"{TIKTOK_BASE_URL}/tag/{_encode_component(clean)}?lang={lang}"


# --------------------------------------------------------------------------- #
# Embedded state extraction
# --------------------------------------------------------------------------- #


def extract_sigi_state(html: Optional[str]) -> Optional[Dict[str, Any]]:
    """Extract the JSON held by ``<script id="SIGI_STATE">``.

    Returns ``None`` when the page carries no state blob (consent walls, empty
    results, markup changes) or when the payload is not valid JSON.
    """

    if not html:
        return None

    soup = BeautifulSoup(html, "html.parser")
    node = soup.find(id=SIGI_STATE_ID)
    if node is None:
        logger.debug("No SIGI_STATE found in page (%d chars)", len(html))
        return None

    try:
        return json.loads(node.get_text())
    except ValueError as exc:
        logger.debug("SIGI_STATE payload is not valid JSON: %s", exc)
        return None


# --------------------------------------------------------------------------- #
# Normalisation
# --------------------------------------------------------------------------- #


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(*values: Any) -> Any:
    """First truthy value, mirroring a chain of ``or`` fallbacks."""
    for value in values:
        if value:
            return value
    return None


def _first_present(*values: Any) -> Any:
    """First value that is not ``None`` (falsy numbers like 0 still count)."""
    for value in values:
        if value is not None:
            return value
    return None


def _as_optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _as_optional_number(value: Any) -> Optional[Union[int, float]]:
    """Numbers pass through untouched; numeric strings are parsed."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, float):
        try:
            return int(value)
        except (TypeError, ValueError):
            pass
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def epoch_to_iso(value: Any) -> Optional[str]:
    """Epoch seconds -> ``2023-11-14T22:13:20.000Z``; ``None`` when unparseable."""
    try:
        seconds = float(value)
        stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _author_name(raw: Dict[str, Any]) -> str:
    author = raw.get("author")
    # some payload variants embed the whole author object instead of the handle
    if isinstance(author, dict):
        author = author.get("uniqueId")
    return _as_text(_first(author, _mapping(raw.get("authorInfo")).get("uniqueId")))


def _hashtags(text_extra: Any) -> List[str]:
    if not isinstance(text_extra, list):
        return []
    tags: List[str] = []
    for entry in text_extra:
        if not isinstance(entry, dict):
            continue
        name = entry.get("hashtagName")
        if name:
            tags.append(_as_text(name))
    return tags


def normalize_item(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Reconcile one ``ItemModule`` entry into the canonical record shape.

    The returned dict may carry an empty ``url``; callers drop those.
    """
    video_id = _as_text(_first(raw.get("id"), raw.get("aweme_id")))
    author = _author_name(raw)
    title = _as_text(_first(raw.get("desc"), raw.get("title")))
    stats = _mapping(raw.get("stats"))
    music = _mapping(raw.get("music"))
    video = _mapping(raw.get("video"))

    url = _first(raw.get("shareUrl"), raw.get("videoUrl"))
    if not url and author and video_id:
        url = f"{TIKTOK_BASE_URL}/@{author}/video/{video_id}"

    cover = _first(video.get("cover"), video.get("dynamicCover"), video.get("originCover"))
    create_time = raw.get("createTime")

    return {
        "id": video_id,
        "title": title,
        "author": author,
        "url": _as_text(url),
        "cover": _as_text(cover) if cover else None,
        "duration": _as_optional_number(_first(video.get("duration"))),
        "music": {
            "title": _as_text(music.get("title")) or None,
            "author": _as_text(music.get("authorName")) or None,
        },
        "stats": {
            "views": _as_optional_int(stats.get("playCount")),
            "likes": _as_optional_int(_first_present(stats.get("diggCount"), stats.get("likeCount"))),
            "comments": _as_optional_int(stats.get("commentCount")),
            "shares": _as_optional_int(stats.get("shareCount")),
            "bookmarks": _as_optional_int(stats.get("collectCount")),
        },
        "publishedAt": epoch_to_iso(create_time) if create_time else None,
        "hashtags": _hashtags(raw.get("textExtra")),
    }


def normalize_item_module(state: Any, max_items: int = 50) -> List[Dict[str, Any]]:
    """Convert ``SIGI_STATE.ItemModule`` into a list of normalised videos.

    Truncation to ``max_items`` happens before records without a URL are
    dropped, so fewer than ``max_items`` records may come back.
    """
    if not isinstance(state, dict):
        return []
    module = state.get(ITEM_MODULE_KEY)
    if isinstance(module, dict):
        items = list(module.values())
    elif isinstance(module, list):
        items = module
    else:
        return []

    if max_items <= 0:
        return []

    records = [normalize_item(item) for item in items[:max_items] if isinstance(item, dict)]
    # records without a resolvable link are noise
    return [record for record in records if record["url"]]
