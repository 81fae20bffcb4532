import pytest

from normalizers import (
    PLACEHOLDER_DURATION,
    PayloadShapeError,
    count_chapter_pages,
    extract_genres,
    extract_studios,
    first_present,
    format_catalog,
    map_catalog_item,
    map_monthly_item,
    map_search_item,
    normalize_listing,
    reconcile_total_pages,
    unwrap_payload,
    validate_manga_details,
    validate_manga_genre,
    validate_manga_pages,
)


@pytest.mark.parametrize(
    "current, total, has_next, expected",
    [
        (2, 1, True, 3),
        (1, 5, False, 5),
        (1, None, True, 2),
        (1, None, False, 1),
        (3, None, False, 3),
        (4, 2, False, 4),
    ],
)
def test_reconcile_total_pages(current, total, has_next, expected):
    assert reconcile_total_pages(current, total, has_next) == expected


def test_first_present_skips_empty_values():
    assert first_present({"a": "", "b": None, "c": "x"}, "a", "b", "c") == "x"
    assert first_present({"a": ""}, "a", default="d") == "d"
    assert first_present(None, "a", default=1) == 1


def test_unwrap_payload_prefers_nested_data():
    assert unwrap_payload({"data": {"data": {"results": [1]}}}) == {"results": [1]}
    assert unwrap_payload({"data": {"results": [2]}}) == {"results": [2]}
    assert unwrap_payload({"results": [3]}) == {"results": [3]}
    assert unwrap_payload([1, 2]) == {}


def test_normalize_listing_maps_items_and_fixes_pagination():
    raw = {
        "data": {
            "results": [{"slug": "abc", "imageUrl": "https://img.test/a.jpg", "name": "Title"}, "junk"],
            "pagination": {"currentPage": 2, "totalPages": 1, "hasNextPage": True},
        }
    }

    listing = normalize_listing(raw, map_catalog_item).to_payload()

    assert listing["currentPage"] == 2
    assert listing["totalPages"] == 3
    assert listing["hasNextPage"] is True
    assert listing["hasPreviousPage"] is True
    assert listing["results"] == [
        {
            "id": "abc",
            "image": "https://img.test/a.jpg",
            "title": "Title",
            "duration": PLACEHOLDER_DURATION,
            "views": 0,
            "rating": None,
            "year": None,
            "genres": [],
        }
    ]


def test_normalize_listing_uses_requested_page_without_pagination():
    listing = normalize_listing({"results": []}, map_catalog_item, requested_page=4)
    assert listing.current_page == 4
    assert listing.total_pages == 4
    assert listing.has_next_page is False


def test_normalize_listing_reads_string_flags():
    raw = {
        "results": [],
        "pagination": {"currentPage": 2, "totalPages": 2, "hasNextPage": "false", "hasPreviousPage": "false"},
    }

    listing = normalize_listing(raw, map_catalog_item)

    assert listing.has_next_page is False
    assert listing.has_previous_page is False
    assert listing.total_pages == 2


def test_normalize_listing_string_true_bumps_total():
    raw = {"pagination": {"currentPage": 2, "totalPages": 2, "hasNextPage": "true"}}

    listing = normalize_listing(raw, map_catalog_item)

    assert listing.has_next_page is True
    assert listing.total_pages == 3


def test_search_item_prefers_thumbnail():
    item = map_search_item({"id": "x", "thumbnailUrl": "thumb", "posterUrl": "poster", "title": "T"})
    assert item["image"] == "thumb"
    assert item["duration"] is None


def test_monthly_item_uses_series_title():
    item = map_monthly_item({"slug": "ep-1", "seriesTitle": "Series", "episodeTitle": "Ep 1", "imageUrl": "i"})
    assert item["title"] == "Series"
    assert item["episodeTitle"] == "Ep 1"
    assert item["duration"] == PLACEHOLDER_DURATION


def test_extract_genres_from_every_known_shape():
    assert extract_genres(["a", "b", 3]) == ["a", "b"]
    assert extract_genres({"data": {"genres": ["a"]}}) == ["a"]
    formatted = format_catalog("genre-list", "genres", ["x", "y"])
    assert extract_genres(formatted) == ["x", "y"]
    assert extract_genres({"unexpected": True}) == []


def test_extract_studios_and_catalog_format():
    studios = extract_studios({"data": {"results": [{"slug": "s"}]}})
    assert format_catalog("studio-list", "results", studios) == {
        "provider": "hentaimama",
        "type": "studio-list",
        "data": {"totalCount": 1, "results": [{"slug": "s"}]},
    }


def test_validate_manga_details_counts_chapters():
    data = validate_manga_details({"status": "success", "data": {"title": "M", "chapters": [{}, {}, {}]}})
    assert data["totalChapters"] == 3


@pytest.mark.parametrize(
    "raw",
    [
        None,
        {"status": "error", "data": {"title": "M"}},
        {"status": "success"},
        {"status": "success", "data": ["not", "a", "dict"]},
    ],
)
def test_validate_manga_details_rejects_bad_shapes(raw):
    with pytest.raises(PayloadShapeError, match="Invalid response structure"):
        validate_manga_details(raw)


def test_validate_manga_pages_requires_a_list():
    assert validate_manga_pages({"status": "success", "data": ["p1", "p2"]}) == ["p1", "p2"]
    with pytest.raises(PayloadShapeError):
        validate_manga_pages({"status": "success", "data": {"pages": []}})


def test_validate_manga_genre_requires_items():
    assert validate_manga_genre({"status": "success", "data": {"items": []}}) == {"items": []}
    with pytest.raises(PayloadShapeError):
        validate_manga_genre({"status": "success", "data": {"items": "none"}})


def test_count_chapter_pages():
    assert count_chapter_pages([1, 2]) == 2
    assert count_chapter_pages({"pages": [1, 2, 3]}) == 3
    assert count_chapter_pages({"other": 1}) == 0
