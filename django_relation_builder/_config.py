from __future__ import annotations

__all__ = ["RelationConfig"]

import dataclasses

from django.conf import settings


@dataclasses.dataclass(frozen=True)
class RelationConfig:
    """
    Library wide options, read from the `RELATION_BUILDER` dictionary in django settings. For example

    >> RELATION_BUILDER = {"ERROR_ON_IGNORED_ORDER": True, "BATCH_SIZE": 500}

    `error_on_ignored_order` decides what batch iteration does with a relation that has a custom order. Batches are
    always windowed by primary key, so the order cannot be honoured - by default it is dropped with a warning, with
    this set an InvalidQuery is raised instead.

    `batch_size` is the default size of a batch when none is passed.

    `preload_cache_size` is the size of the LRU cache used to memoize belongs-to targets between batches, so that
    parents shared by many batches are only fetched once. The default keeps up to 10000 objects per model.
    """

    error_on_ignored_order: bool = False
    batch_size: int = 1000
    preload_cache_size: int = 10_000

    def __post_init__(self):
        if self.batch_size <= 0:
            msg = f"BATCH_SIZE has to be a positive integer, got {self.batch_size!r}"
            raise ValueError(msg)

        if self.preload_cache_size <= 0:
            msg = f"PRELOAD_CACHE_SIZE has to be a positive integer, got {self.preload_cache_size!r}"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls) -> RelationConfig:
        options = dict(getattr(settings, "RELATION_BUILDER", None) or {})
        known = {field.name.upper(): field.name for field in dataclasses.fields(cls)}

        unknown = sorted(set(options) - set(known))
        if unknown:
            msg = f"Unknown RELATION_BUILDER options: {', '.join(unknown)}"
            raise ValueError(msg)

        return cls(**{known[key]: value for key, value in options.items()})
