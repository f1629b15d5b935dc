from __future__ import annotations

__all__ = ["Batches"]

import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from chunkator import chunkator_page

from ._config import RelationConfig
from ._exceptions import InvalidQuery
from ._preload import Preloader

if TYPE_CHECKING:
    from ._relation import Relation

logger = logging.getLogger(__name__)


class Batches:
    """
    Iterates a relation in batches ordered by primary key, each batch is one query windowed by the last primary key
    of the previous batch. Associations to include are preloaded for every batch, belongs-to targets are memoized
    between batches (see Preloader).

    >> for books in Book.relation.includes("author").find_in_batches(batch_size=500):
    >>     ...
    >> for book in Book.relation.find_each(start=1000):
    >>     ...

    `start` and `finish` are inclusive primary key bounds. The object can be iterated more than once, each iteration
    queries again.

    A custom order of the relation cannot be honoured, it is ignored with a warning, or raises an InvalidQuery when
    ERROR_ON_IGNORED_ORDER is set.
    """

    def __init__(
        self,
        relation: Relation,
        batch_size: int | None = None,
        start: Any = None,
        finish: Any = None,
        *,
        each: bool = False,
    ):
        self.config = RelationConfig.from_settings()
        self.relation = relation
        self.batch_size = self.config.batch_size if batch_size is None else batch_size
        self.start = start
        self.finish = finish
        self.each = each
        self._check()

    def _check(self) -> None:
        state = self.relation.state
        if not isinstance(self.batch_size, int) or self.batch_size <= 0:
            msg = f"batch_size has to be a positive integer, got {self.batch_size!r}"
            raise InvalidQuery(msg)

        if state.limit is not None or state.offset:
            msg = "Batches cannot be taken from a relation with a limit or offset"
            raise InvalidQuery(msg)

        if state.group:
            msg = "Batches cannot be taken from a grouped relation"
            raise InvalidQuery(msg)

        if state.order:
            msg = "Scoped order is ignored, batches are always ordered by primary key"
            if self.config.error_on_ignored_order:
                raise InvalidQuery(msg)
            logger.warning(msg)

    def __iter__(self) -> Iterator[Any]:
        for batch in self._batches():
            if self.each:
                yield from batch
            else:
                yield batch

    def _batches(self) -> Iterator[list[Any]]:
        relation = self.relation.unscope("order")
        if relation.state.none:
            return

        relation._check_lock()
        if self.start is not None:
            relation = relation.filter(pk__gte=self.start)
        if self.finish is not None:
            relation = relation.filter(pk__lte=self.finish)

        joined, preloaded = relation._loading_strategy()
        preloader = None
        if joined or preloaded:
            preloader = Preloader(relation.model, [*joined, *preloaded], cache_size=self.config.preload_cache_size)

        for page in chunkator_page(relation.to_queryset(), self.batch_size):
            records = list(page)
            if not records:
                break
            logger.debug("Loaded a batch of %d %s", len(records), relation.model.__name__)
            if preloader is not None:
                preloader.preload(records)
            relation._mark(records)
            yield records
