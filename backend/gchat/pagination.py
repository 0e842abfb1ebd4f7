from __future__ import annotations

from typing import Optional, Sequence, Tuple

from pydantic import BaseModel

from .errors import InvalidPage, InvariantViolation
from .validator import Validator, permitted_value

MAX_PAGE = 10_000_000
MAX_PAGE_SIZE = 100
DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10


class PaginationMetadata(BaseModel):
    current_page: int
    page_size: int
    first_page: int
    last_page: int
    total_records: int


class Filters:
    """Page window plus an optional sort key checked against an allow-list.

    A sort key is a column name, optionally prefixed with ``-`` for
    descending order.
    """

    def __init__(
        self,
        page: int = DEFAULT_PAGE,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort: str = "",
        sort_safe_list: Sequence[str] = (),
    ):
        self.page = page
        self.page_size = page_size
        self.sort = sort
        self.sort_safe_list = tuple(sort_safe_list)

    def __repr__(self) -> str:
        return f"Filters(page={self.page}, page_size={self.page_size}, sort={self.sort!r})"

    def limit(self) -> int:
        return self.page_size

    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def sort_column(self) -> str:
        if self.sort in self.sort_safe_list:
            return self.sort.lstrip("-")
        # validate_filters must have rejected this before any query is built
        raise InvariantViolation(f"unsafe sort param: {self.sort!r}")

    def sort_direction(self) -> str:
        return "DESC" if self.sort.startswith("-") else "ASC"


def validate_filters(v: Validator, f: Filters) -> None:
    v.check(f.page > 0, "page", "must be greater than zero")
    v.check(f.page <= MAX_PAGE, "page", "must be a maximum of 10 million")
    v.check(f.page_size > 0, "page_size", "must be greater than zero")
    v.check(f.page_size <= MAX_PAGE_SIZE, "page_size", "must be a maximum of 100")

    if f.sort_safe_list and f.sort:
        v.check(permitted_value(f.sort, *f.sort_safe_list), "sort", "invalid sort value")


def calculate_pagination_metadata(total_records: int, page: int, page_size: int) -> PaginationMetadata:
    if total_records == 0:
        if page != 1:
            raise InvalidPage()
        return PaginationMetadata(
            current_page=page,
            page_size=page_size,
            first_page=1,
            last_page=1,
            total_records=0,
        )

    return PaginationMetadata(
        current_page=page,
        page_size=page_size,
        first_page=1,
        # ceiling division; plain floor division would drop the trailing partial page
        last_page=(total_records + page_size - 1) // page_size,
        total_records=total_records,
    )


def empty_page(f: Filters) -> Tuple[list, PaginationMetadata]:
    return [], calculate_pagination_metadata(0, f.page, f.page_size)


def total_from_rows(rows: Sequence[dict], key: str = "total_records") -> int:
    return int(rows[0][key]) if rows else 0


def normalize_sort(sort: Optional[str], default: str) -> str:
    sort = (sort or "").strip()
    return sort or default
