from __future__ import annotations

__all__ = ["Preloader", "assign_collection", "assign_single"]

import logging
from collections import defaultdict
from collections.abc import Iterable

from django.db import models
from django.db.models import F
from lru import LRU

from ._paths import path_tree
from ._registry import Association, AssociationKind, registry

logger = logging.getLogger(__name__)

OWNER_KEY = "_preload_owner_id"


def assign_single(owner: models.Model, association: Association, target: models.Model | None) -> None:
    # goes through the field cache, setattr would overwrite the foreign key when the target is None
    owner._meta.get_field(association.name).set_cached_value(owner, target)


def assign_collection(owner: models.Model, association: Association, targets: Iterable[models.Model]) -> None:
    """
    Stores loaded targets in django's prefetched objects cache, so that `owner.books.all()` returns them without a
    query. Has-many-through associations have no django manager, they are cached as a plain list.
    """
    targets = list(targets)
    if not hasattr(owner, "_prefetched_objects_cache"):
        owner._prefetched_objects_cache = {}

    if association.through:
        owner._prefetched_objects_cache[association.name] = targets
        return

    manager = getattr(owner, association.name)
    queryset = manager._apply_rel_filters(association.target._base_manager.all())
    queryset._result_cache = targets
    queryset._prefetch_done = True
    owner._prefetched_objects_cache[getattr(manager, "prefetch_cache_name", association.name)] = queryset

    if association.kind is AssociationKind.HAS_MANY:
        back_field = association.target._meta.get_field(association.back_path)
        for target in targets:
            back_field.set_cached_value(target, owner)


class Preloader:
    """
    Loads associations of already loaded records with one query per association and level, and assigns them to the
    records so that accessing them does not query again.

    >> Preloader(Author, ["books__reviews", "supplier"]).preload(authors)

    With `cache_size`, belongs-to targets are memoized in an LRU cache between calls to `preload`, so that when
    records are processed in batches, targets shared between batches are only fetched once. The cache size is per
    association, the cache is temporarily increased while a batch is assigned, so that objects the current batch
    relies on are not evicted.
    """

    def __init__(self, model: type[models.Model], paths: Iterable[str], *, cache_size: int | None = None):
        self.model = model
        self.tree = path_tree(paths)
        self.cache_size = cache_size
        self.memoized_objects: dict[tuple[type[models.Model], str], LRU] = {}
        self._validate(model, self.tree)

    @staticmethod
    def _validate(model: type[models.Model], tree: dict[str, dict]) -> None:
        schema = registry.schema_for(model)
        for name, children in tree.items():
            Preloader._validate(schema.association(name).target, children)

    def preload(self, records: list[models.Model]) -> None:
        self._preload_level(self.model, records, self.tree)

    def _preload_level(self, model: type[models.Model], records: list[models.Model], tree: dict[str, dict]) -> None:
        if not records:
            return

        schema = registry.schema_for(model)
        for name, children in tree.items():
            association = schema.association(name)
            if association.many:
                loaded = self._preload_collection(association, records)
            else:
                loaded = self._preload_single(association, records)
            self._preload_level(association.target, loaded, children)

    def _memoized(self, association: Association) -> LRU | None:
        if self.cache_size is None:
            return None
        key = (association.model, association.name)
        if key not in self.memoized_objects:
            self.memoized_objects[key] = LRU(self.cache_size)
        return self.memoized_objects[key]

    def _preload_single(self, association: Association, records: list[models.Model]) -> list[models.Model]:
        # find all the objects we need to have to process these records
        need_ids = {getattr(record, association.foreign_key) for record in records} - {None}

        memoized = self._memoized(association)
        if memoized is not None:
            need_ids -= set(memoized.keys())

        fetched = {}
        if need_ids:
            fetched = {target.pk: target for target in association.target_relation().filter(pk__in=need_ids)}
            logger.debug("Preloaded %d %s for %s", len(fetched), association.name, association.model.__name__)

        if memoized is not None:
            # temporarily increase the LRU limit, the objects already there are relied on by these records
            memoized.set_size(memoized.get_size() + len(fetched))
            memoized.update(fetched)
            lookup = memoized
        else:
            lookup = fetched

        loaded = {}
        for record in records:
            pk = getattr(record, association.foreign_key)
            target = lookup.get(pk) if pk is not None else None
            assign_single(record, association, target)
            if target is not None:
                loaded[target.pk] = target

        if memoized is not None:
            memoized.set_size(self.cache_size)

        return list(loaded.values())

    def _preload_collection(self, association: Association, records: list[models.Model]) -> list[models.Model]:
        owner_ids = {record.pk for record in records}
        queryset = (
            association.target_relation()
            .filter(**{f"{association.back_path}__in": owner_ids})
            .to_queryset()
            .annotate(**{OWNER_KEY: F(association.back_path)})
        )

        per_owner: dict[object, dict[object, models.Model]] = defaultdict(dict)
        count = 0
        for target in queryset:
            # has-many-through can reach the same target several times
            per_owner[getattr(target, OWNER_KEY)].setdefault(target.pk, target)
            count += 1
        logger.debug("Preloaded %d %s for %s", count, association.name, association.model.__name__)

        loaded = []
        for record in records:
            targets = list(per_owner.get(record.pk, {}).values())
            assign_collection(record, association, targets)
            loaded.extend(targets)
        return loaded
