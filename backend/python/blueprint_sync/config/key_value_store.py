from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")


@dataclass
class QueryPage(Generic[T]):
    """One page of a prefix query: (key, value) pairs plus the continuation cursor."""

    results: List[Tuple[str, T]] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class QueryAllResult(Generic[T]):
    results: List[Tuple[str, T]] = field(default_factory=list)
    pages: int = 0
    truncated: bool = False


class KeyValueStore(ABC, Generic[T]):
    """
    Abstract key-value store.

    Implementations provide single-key reads and writes plus a cursor-paginated
    prefix query. There is no multi-key atomicity: callers that mutate several
    keys must order their writes so an interruption leaves a recoverable state.
    Backend failures surface as ConnectionError.
    """

    @abstractmethod
    async def create_key(
        self, key: str, value: T, overwrite: bool = True, ttl: Optional[int] = None
    ) -> bool:
        """Write a key. Returns False when overwrite is False and the key exists."""

    @abstractmethod
    async def get_key(self, key: str) -> Optional[T]:
        """Return the value for key, or None."""

    @abstractmethod
    async def delete_key(self, key: str) -> bool:
        """Delete a key. Returns True when something was removed."""

    @abstractmethod
    async def query(
        self, prefix: str, cursor: Optional[str] = None, limit: int = 100
    ) -> QueryPage[T]:
        """Return up to limit entries whose key starts with prefix.

        next_cursor is None once the prefix is exhausted.
        """

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        """Release backend resources."""


async def query_all_pages(
    store: KeyValueStore[T],
    prefix: str,
    page_size: int = 100,
    max_pages: int = 50,
    logger=None,
) -> QueryAllResult[T]:
    """Follow query cursors until the prefix is exhausted or max_pages is hit.

    A result with truncated=True is partial and callers must treat it as
    possibly incomplete.
    """
    collected = QueryAllResult()
    cursor: Optional[str] = None

    while True:
        page = await store.query(prefix, cursor=cursor, limit=page_size)
        collected.pages += 1
        collected.results.extend(page.results)
        cursor = page.next_cursor
        if not cursor:
            break
        if collected.pages >= max_pages:
            collected.truncated = True
            if logger:
                logger.warning(
                    "⚠️ Query for prefix '%s' stopped at the %d page cap; results may be incomplete",
                    prefix,
                    max_pages,
                )
            break

    return collected
