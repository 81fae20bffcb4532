# normalizers.py
"""
Pure functions mapping provider JSON into the stable client-facing schema.

Provider payloads drift between versions: results may sit under ``data.data``,
``data`` or at the top level, and items rename their fields (``posterUrl`` vs
``imageUrl``, ``slug`` vs ``id``...). Every function here picks the first present
alternative in a fixed precedence order and falls back to a default, never raising
on a missing field.
"""
from typing import Any, Callable, Dict, List, Optional, Sequence

from models import NormalizedListing

PLACEHOLDER_DURATION = "--:--"

Item = Dict[str, Any]
ItemMapper = Callable[[Item], Item]


class PayloadShapeError(ValueError):
    """Raised by validators when a provider payload lacks its required structure."""


def first_present(mapping: Any, *names: str, default: Any = None) -> Any:
    """Return the first truthy value among ``names`` in ``mapping``, else ``default``."""
    if not isinstance(mapping, dict):
        return default
    for name in names:
        value = mapping.get(name)
        if value:
            return value
    return default


def first_defined(mapping: Any, *names: str, default: Any = None) -> Any:
    """Like ``first_present`` but keeps falsy values such as 0 or False."""
    if not isinstance(mapping, dict):
        return default
    for name in names:
        value = mapping.get(name)
        if value is not None:
            return value
    return default


def unwrap_payload(raw: Any) -> Dict[str, Any]:
    """Locate the object holding results: ``data.data``, then ``data``, then the payload itself."""
    if not isinstance(raw, dict):
        return {}
    data = raw.get("data")
    if isinstance(data, dict):
        nested = data.get("data")
        if isinstance(nested, dict):
            return nested
        return data
    return raw


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any, default: bool) -> bool:
    # Some providers send flags as strings ("false")
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    if isinstance(value, (int, float)):
        return bool(value)
    return default


def reconcile_total_pages(current_page: int, total_pages: Optional[int], has_next_page: bool) -> int:
    """
    Make ``total_pages`` consistent with ``current_page`` and ``has_next_page``.

    Upstreams sometimes report ``hasNextPage`` while ``totalPages`` is missing or
    not past the current page; the total is then bumped to ``current_page + 1``.
    The result is never below ``current_page``.
    """
    total = total_pages
    if (not total or current_page >= total) and has_next_page:
        total = current_page + 1
    if current_page > 1 and total is not None and total < current_page:
        total = current_page + (1 if has_next_page else 0)
    if not total:
        total = 1
    return max(total, current_page)


def normalize_listing(raw: Any, mapper: ItemMapper, requested_page: Optional[int] = None) -> NormalizedListing:
    wrapper = unwrap_payload(raw)
    items = first_present(wrapper, "results", "items", default=[])
    if not isinstance(items, list):
        items = []
    pagination = first_present(wrapper, "pagination", "meta", default={})
    if not isinstance(pagination, dict):
        pagination = {}

    current_page = _as_int(pagination.get("currentPage")) or requested_page or 1
    current_page = max(current_page, 1)
    total_pages = _as_int(first_defined(pagination, "totalPages", "total"))
    has_next_page = _as_bool(pagination.get("hasNextPage"), False)

    return NormalizedListing(
        results=[mapper(item) for item in items if isinstance(item, dict)],
        currentPage=current_page,
        totalPages=reconcile_total_pages(current_page, total_pages, has_next_page),
        hasNextPage=has_next_page,
        hasPreviousPage=_as_bool(pagination.get("hasPreviousPage"), current_page > 1),
    )


# Item mappers

def map_catalog_item(item: Item) -> Item:
    return {
        "id": first_present(item, "slug", "id", "seriesId", default=""),
        "image": first_present(item, "posterUrl", "imageUrl", "featuredImageUrl", "image", default=""),
        "title": first_present(item, "title", "name", default=""),
        "duration": first_present(item, "duration", "runTime", default=PLACEHOLDER_DURATION),
        "views": first_present(item, "views", "viewCount", default=0),
        "rating": first_present(item, "rating"),
        "year": first_present(item, "year"),
        "genres": first_present(item, "genres", "categories", default=[]),
    }


def map_search_item(item: Item) -> Item:
    mapped = map_catalog_item(item)
    mapped["image"] = first_present(item, "thumbnailUrl", "imageUrl", "featuredImageUrl", "image", default="")
    mapped["duration"] = first_present(item, "duration", "runTime")
    return mapped


def map_brand_item(item: Item) -> Item:
    # Studio pages don't report views
    return {
        "id": first_present(item, "slug", default=""),
        "title": first_present(item, "title", default=""),
        "image": first_present(item, "posterUrl", default=""),
        "duration": first_present(item, "duration", default=PLACEHOLDER_DURATION),
        "views": 0,
        "slug": item.get("slug"),
        "year": item.get("year"),
        "rating": item.get("rating"),
    }


def map_monthly_item(item: Item) -> Item:
    return {
        "id": first_present(item, "slug", default=""),
        "image": first_present(item, "imageUrl", default=""),
        "title": first_present(item, "seriesTitle", default=""),
        "episodeTitle": first_present(item, "episodeTitle", default=""),
        "releaseDate": first_present(item, "releaseDate", default=""),
        "rating": first_present(item, "rating"),
        "duration": PLACEHOLDER_DURATION,
        "views": 0,
        "year": None,
        "genres": [],
        "status": item.get("status"),
    }


def map_tvshow_item(item: Item) -> Item:
    return {
        "slug": first_present(item, "slug", "id", default=""),
        "title": first_present(item, "title", "seriesTitle", default=""),
        "posterUrl": first_present(item, "posterUrl", "imageUrl", "image", default=""),
        "year": first_present(item, "year", "releaseYear"),
        "rating": item.get("rating"),
    }


def passthrough_item(item: Item) -> Item:
    return item


# Flat lists

def extract_genres(raw: Any) -> List[str]:
    """
    Pull the genre names out of any known shape:
    a bare list, ``{data: {genres}}`` or an already formatted ``{data: {data: {genres}}}``.
    """
    if isinstance(raw, list):
        return [g for g in raw if isinstance(g, str)]
    for candidate in (unwrap_payload(raw), raw.get("data") if isinstance(raw, dict) else None, raw):
        genres = candidate.get("genres") if isinstance(candidate, dict) else None
        if isinstance(genres, list):
            return [g for g in genres if isinstance(g, str)]
    return []


def extract_studios(raw: Any) -> List[Item]:
    if isinstance(raw, list):
        return raw
    results = unwrap_payload(raw).get("results")
    if isinstance(results, list):
        return results
    return []


def format_catalog(kind: str, key: str, values: Sequence[Any], provider: str = "hentaimama") -> Dict[str, Any]:
    return {
        "provider": provider,
        "type": kind,
        "data": {
            "totalCount": len(values),
            key: list(values),
        },
    }


# Manga payload validators: return the inner ``data`` or raise PayloadShapeError

def _successful_data(raw: Any) -> Any:
    if not isinstance(raw, dict) or raw.get("status") != "success" or not raw.get("data"):
        raise PayloadShapeError("Invalid response structure from API")
    return raw["data"]


def validate_manga_details(raw: Any) -> Dict[str, Any]:
    data = _successful_data(raw)
    if not isinstance(data, dict):
        raise PayloadShapeError("Invalid response structure from API")
    chapters = data.get("chapters")
    if isinstance(chapters, list):
        data["totalChapters"] = len(chapters)
    return data


def validate_manga_pages(raw: Any) -> List[Any]:
    if not isinstance(raw, dict) or raw.get("status") != "success" or not isinstance(raw.get("data"), list):
        raise PayloadShapeError("Invalid response structure from API")
    return raw["data"]


def validate_manga_genre(raw: Any) -> Dict[str, Any]:
    data = _successful_data(raw)
    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise PayloadShapeError("Invalid response structure from API")
    return data


def count_chapter_pages(data: Any) -> int:
    if isinstance(data, list):
        return len(data)
    pages = data.get("pages") if isinstance(data, dict) else None
    return len(pages) if isinstance(pages, list) else 0
