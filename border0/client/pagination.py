"""
Pagination over list endpoints.

Paginated endpoints return ``{"pagination": {...}, "list": [...]}`` where
``pagination.next_page`` is 0 once the last page has been served.
"""

from typing import Any, Callable, Dict, Generic, Iterator, List, Tuple, TypeVar

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 100

# fetch(page, size) -> (items, next_page); next_page <= 0 means no more pages
FetchPage = Callable[[int, int], Tuple[List[T], int]]


class Paginator(Generic[T]):
    """Sequential access to the pages of a paginated resource."""

    def __init__(self, fetch: FetchPage, page_size: int = DEFAULT_PAGE_SIZE):
        if page_size <= 0:
            page_size = DEFAULT_PAGE_SIZE
        self.page_size = page_size
        self._fetch = fetch
        self._next_page = 1
        self._done = False

    def has_next(self) -> bool:
        return not self._done

    def next(self) -> List[T]:
        """Fetch the next page. Returns an empty list once exhausted."""
        if self._done:
            return []
        items, next_page = self._fetch(self._next_page, self.page_size)
        if next_page <= 0:
            self._done = True
        else:
            self._next_page = next_page
        return items

    def pages(self) -> Iterator[List[T]]:
        """Iterate over pages, stopping early on an empty page."""
        while self.has_next():
            items = self.next()
            if not items:
                return
            yield items

    def __iter__(self) -> Iterator[T]:
        for page in self.pages():
            yield from page


def parse_page(
    body: Dict[str, Any], parse: Callable[[Dict[str, Any]], T]
) -> Tuple[List[T], int]:
    """Split a paginated response body into (items, next_page)."""
    body = body or {}
    pagination = body.get("pagination") or {}
    items = [parse(item) for item in body.get("list") or []]
    return items, int(pagination.get("next_page") or 0)
