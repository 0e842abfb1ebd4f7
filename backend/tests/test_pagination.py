import pytest

from gchat.errors import InvalidPage, InvariantViolation
from gchat.pagination import (
    Filters,
    calculate_pagination_metadata,
    empty_page,
    normalize_sort,
    total_from_rows,
    validate_filters,
)
from gchat.validator import Validator

SAFE = ("created_at", "-created_at", "updated_at", "-updated_at")


def _errors(filters):
    v = Validator()
    validate_filters(v, filters)
    return v.errors


def test_limit_and_offset_follow_page_window():
    f = Filters(page=3, page_size=20)

    assert f.limit() == 20
    assert f.offset() == 40
    assert Filters().offset() == 0


def test_no_records_on_first_page_is_a_single_empty_page():
    meta = calculate_pagination_metadata(0, 1, 10)

    assert meta.current_page == 1
    assert meta.first_page == 1
    assert meta.last_page == 1
    assert meta.total_records == 0


def test_no_records_past_first_page_is_invalid_page():
    with pytest.raises(InvalidPage) as err:
        calculate_pagination_metadata(0, 2, 10)

    assert err.value.errors == {"page": "invalid page"}
    assert err.value.status_code == 422


@pytest.mark.parametrize(
    "total, size, last_page",
    [(95, 10, 10), (100, 10, 10), (101, 10, 11), (1, 100, 1), (7, 3, 3)],
)
def test_last_page_rounds_up(total, size, last_page):
    meta = calculate_pagination_metadata(total, 1, size)

    assert meta.last_page == last_page
    assert meta.total_records == total
    assert meta.page_size == size


def test_validate_filters_accepts_bounds():
    assert _errors(Filters(page=1, page_size=1)) == {}
    assert _errors(Filters(page=10_000_000, page_size=100)) == {}


@pytest.mark.parametrize(
    "page, page_size, expected",
    [
        (0, 10, {"page": "must be greater than zero"}),
        (10_000_001, 10, {"page": "must be a maximum of 10 million"}),
        (1, 0, {"page_size": "must be greater than zero"}),
        (1, 101, {"page_size": "must be a maximum of 100"}),
        (-1, -1, {"page": "must be greater than zero", "page_size": "must be greater than zero"}),
    ],
)
def test_validate_filters_rejects_out_of_range(page, page_size, expected):
    assert _errors(Filters(page=page, page_size=page_size)) == expected


def test_sort_must_be_on_the_safe_list():
    assert _errors(Filters(sort="-created_at", sort_safe_list=SAFE)) == {}
    assert _errors(Filters(sort="content; DROP TABLE users", sort_safe_list=SAFE)) == {
        "sort": "invalid sort value"
    }


def test_sort_column_and_direction():
    f = Filters(sort="-updated_at", sort_safe_list=SAFE)
    assert f.sort_column() == "updated_at"
    assert f.sort_direction() == "DESC"

    f = Filters(sort="created_at", sort_safe_list=SAFE)
    assert f.sort_column() == "created_at"
    assert f.sort_direction() == "ASC"


def test_unsafe_sort_column_is_an_invariant_violation():
    f = Filters(sort="password_hash", sort_safe_list=SAFE)

    with pytest.raises(InvariantViolation):
        f.sort_column()


def test_empty_page_helper():
    items, meta = empty_page(Filters(page=1, page_size=5))

    assert items == []
    assert meta.total_records == 0
    assert meta.page_size == 5

    with pytest.raises(InvalidPage):
        empty_page(Filters(page=3, page_size=5))


def test_total_from_rows_and_normalize_sort():
    assert total_from_rows([]) == 0
    assert total_from_rows([{"total_records": 42}, {"total_records": 42}]) == 42
    assert normalize_sort("  ", "-created_at") == "-created_at"
    assert normalize_sort(None, "-created_at") == "-created_at"
    assert normalize_sort(" updated_at ", "-created_at") == "updated_at"
