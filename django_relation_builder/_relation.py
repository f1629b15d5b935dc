from __future__ import annotations

__all__ = ["Relation", "RelationDescriptor"]

import copy
import dataclasses
import functools
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from django.core.exceptions import FieldDoesNotExist
from django.db import models, router, transaction
from django.db.models import Avg, Count, F, Max, Min, Q, Sum
from django.db.models.expressions import OrderBy

from ._batches import Batches
from ._conditions import Condition, build_conditions, combine, resolve_key
from ._eager import EagerJoinLoader
from ._exceptions import InvalidQuery, NotFound
from ._paths import flatten_paths, split_path
from ._preload import Preloader
from ._registry import registry

logger = logging.getLogger(__name__)

CLAUSES = (
    "where",
    "order",
    "group",
    "having",
    "limit",
    "offset",
    "select",
    "distinct",
    "joins",
    "left_outer_joins",
    "includes",
    "preload",
    "eager_load",
    "lock",
    "readonly",
    "strict_loading",
)

LOCK_MODES = {
    "update": (),
    "nowait": (("nowait", True),),
    "skip_locked": (("skip_locked", True),),
    "no_key": (("no_key", True),),
}

# clauses which have to be equal on both sides of or_
STRUCTURAL_CLAUSES = ("limit", "offset", "group", "distinct", "joins", "left_outer_joins", "lock")


@dataclasses.dataclass(frozen=True)
class RelationState:
    where: tuple[Condition, ...] = ()
    order: tuple[Any, ...] = ()
    group: tuple[str, ...] = ()
    having: tuple[Condition, ...] = ()
    limit: int | None = None
    offset: int | None = None
    select: tuple[str, ...] = ()
    annotations: tuple[tuple[str, Any], ...] = ()
    distinct: bool = False
    joins: tuple[str, ...] = ()
    left_outer_joins: tuple[str, ...] = ()
    includes: tuple[str, ...] = ()
    preload: tuple[str, ...] = ()
    eager_load: tuple[str, ...] = ()
    lock: tuple[tuple[str, bool], ...] | None = None
    readonly: bool = False
    strict_loading: bool = False
    none: bool = False


_DEFAULTS = RelationState()


def _cleared(kind: str) -> dict[str, Any]:
    if kind not in CLAUSES:
        msg = f"Unknown clause '{kind}', expected one of: {', '.join(CLAUSES)}"
        raise InvalidQuery(msg)

    if kind == "select":
        return {"select": (), "annotations": ()}
    return {kind: getattr(_DEFAULTS, kind)}


def _union(first: tuple, second: Iterable) -> tuple:
    return first + tuple(item for item in second if item not in first)


class Relation:
    """
    An immutable description of a query on `model`. Every builder method returns a new relation, and nothing is
    read from the database until a terminal method (iteration, to_list, count, pluck, first, exists, ...) is
    called. Each terminal call runs its own query, use to_list() to load once and keep the records.

    Models get their relation through a descriptor, `Book.relation` is a fresh relation with the model's default
    scope already applied. Named scopes are methods of a Relation subclass:

    >> class BookRelation(Relation):
    >>     def in_print(self):
    >>         return self.filter(out_of_print=False)
    >>
    >> class Book(Record):
    >>     relation = BookRelation.as_descriptor()
    >>
    >> Book.relation.in_print().order("-year_published").includes("author").limit(10)

    Conditions are translated to django Q objects, and the whole relation is compiled to a single django queryset
    by to_queryset(). All the conditions are applied in one filter() call, so conditions on the same multi-valued
    association share one join, as in plain SQL.
    """

    def __init__(self, model: type[models.Model], state: RelationState | None = None):
        self.model = model
        self._state = state or _DEFAULTS

    @classmethod
    def for_model(cls, model: type[models.Model]) -> Relation:
        relation = cls(model)
        default_scope = registry.schema_for(model).default_scope
        if default_scope is not None:
            relation = default_scope(relation)
        return relation

    @classmethod
    def as_descriptor(cls) -> RelationDescriptor:
        return RelationDescriptor(cls)

    @property
    def state(self) -> RelationState:
        return self._state

    def _spawn(self, **changes: Any) -> Relation:
        return type(self)(self.model, dataclasses.replace(self._state, **changes))

    def __repr__(self) -> str:
        clauses = []
        for field in dataclasses.fields(self._state):
            value = getattr(self._state, field.name)
            if value != field.default:
                clauses.append(f"{field.name}={value!r}")
        return f"<{type(self).__name__} {self.model.__name__}: {', '.join(clauses) or 'all'}>"

    def __getattr__(self, name: str) -> Callable[..., Relation]:
        # enum scopes, Order.relation.shipped()
        if name.startswith("_") or name == "model":
            raise AttributeError(name)

        scope = registry.schema_for(self.model).scopes.get(name)
        if scope is None:
            msg = f"'{type(self).__name__}' object has no attribute or scope '{name}'"
            raise AttributeError(msg)
        return functools.partial(scope, self)

    # -- conditions --

    def filter(self, *args: Any, **kwargs: Any) -> Relation:
        if not args and not kwargs:
            return self
        conditions = build_conditions(self.model, args, kwargs, aliases=self._aliases())
        return self._spawn(where=self._state.where + tuple(conditions))

    def exclude(self, *args: Any, **kwargs: Any) -> Relation:
        if not args and not kwargs:
            return self
        conditions = build_conditions(self.model, args, kwargs, negate=True, aliases=self._aliases())
        return self._spawn(where=self._state.where + tuple(conditions))

    def rewhere(self, *args: Any, **kwargs: Any) -> Relation:
        conditions = build_conditions(self.model, args, kwargs, aliases=self._aliases())
        replaced = frozenset().union(*(condition.attributes for condition in conditions))
        where = tuple(condition for condition in self._state.where if not condition.attributes & replaced)
        return self._spawn(where=where + tuple(conditions))

    def or_(self, other: Relation) -> Relation:
        self._check_same_model(other, "or_")

        incompatible = [
            name for name in STRUCTURAL_CLAUSES if getattr(self._state, name) != getattr(other._state, name)
        ]
        if incompatible:
            msg = f"Relation passed to or_ must be structurally compatible. Incompatible values: {incompatible}"
            raise InvalidQuery(msg)

        if self._state.none or other._state.none:
            return self

        return self._spawn(
            where=self._or_conditions(self._state.where, other._state.where),
            having=self._or_conditions(self._state.having, other._state.having),
        )

    @staticmethod
    def _or_conditions(first: tuple[Condition, ...], second: tuple[Condition, ...]) -> tuple[Condition, ...]:
        if not first or not second:
            # one side matches everything
            return ()

        return (
            Condition(
                q=combine(first) | combine(second),
                attributes=frozenset().union(*(condition.attributes for condition in first + second)),
                references=frozenset().union(*(condition.references for condition in first + second)),
            ),
        )

    def having(self, *args: Any, **kwargs: Any) -> Relation:
        if any(not isinstance(arg, Q) for arg in args):
            msg = "having() accepts Q objects and keyword conditions on selected aggregates only"
            raise InvalidQuery(msg)
        conditions = build_conditions(self.model, args, kwargs, aliases=self._aliases())
        return self._spawn(having=self._state.having + tuple(conditions))

    def none(self) -> Relation:
        return self._spawn(none=True)

    # -- ordering, grouping, windows --

    def order(self, *keys: Any, **directions: str) -> Relation:
        return self._spawn(order=self._state.order + self._order_keys(keys, directions))

    def reorder(self, *keys: Any, **directions: str) -> Relation:
        return self._spawn(order=self._order_keys(keys, directions))

    def reverse_order(self) -> Relation:
        order = self._state.order or ("pk",)
        return self._spawn(order=tuple(self._reverse_key(key) for key in order))

    @staticmethod
    def _reverse_key(key: Any) -> Any:
        if isinstance(key, str):
            if key == "?":
                return key
            return key[1:] if key.startswith("-") else f"-{key}"
        if isinstance(key, OrderBy):
            return copy.copy(key).reverse_ordering()
        return key.desc()

    def _order_keys(self, keys: tuple[Any, ...], directions: dict[str, str]) -> tuple[Any, ...]:
        ordered = []
        for key in keys:
            if isinstance(key, str):
                if key != "?":
                    self._check_attribute(key.removeprefix("-"))
            elif not hasattr(key, "resolve_expression"):
                msg = f"Cannot order {self.model.__name__} by {key!r}"
                raise InvalidQuery(msg)
            ordered.append(key)

        for name, direction in directions.items():
            self._check_attribute(name)
            if str(direction).lower() not in ("asc", "desc"):
                msg = f"Direction '{direction}' is invalid. Valid directions are: asc, desc"
                raise InvalidQuery(msg)
            ordered.append(f"-{name}" if str(direction).lower() == "desc" else name)

        return tuple(ordered)

    def group(self, *keys: str) -> Relation:
        for key in keys:
            self._check_attribute(key)
        return self._spawn(group=_union(self._state.group, keys))

    def regroup(self, *keys: str) -> Relation:
        return self.unscope("group").group(*keys)

    def limit(self, value: int | None) -> Relation:
        return self._spawn(limit=self._check_window("limit", value))

    def offset(self, value: int | None) -> Relation:
        return self._spawn(offset=self._check_window("offset", value))

    @staticmethod
    def _check_window(name: str, value: int | None) -> int | None:
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            msg = f"{name} has to be a non-negative integer or None, got {value!r}"
            raise InvalidQuery(msg)
        return value

    def distinct(self, value: bool = True) -> Relation:
        return self._spawn(distinct=bool(value))

    # -- columns --

    def select(self, *fields: str, **annotations: Any) -> Relation:
        for name in fields:
            self._check_column(name)
        for alias, expression in annotations.items():
            if not hasattr(expression, "resolve_expression"):
                msg = f"Selected annotation '{alias}' has to be an expression, got {expression!r}"
                raise InvalidQuery(msg)

        existing = dict(self._state.annotations)
        existing.update(annotations)
        return self._spawn(select=_union(self._state.select, fields), annotations=tuple(existing.items()))

    def reselect(self, *fields: str, **annotations: Any) -> Relation:
        return self.unscope("select").select(*fields, **annotations)

    def _check_column(self, name: str) -> None:
        if name == "pk":
            return
        try:
            field = self.model._meta.get_field(name)
        except FieldDoesNotExist:
            field = None
        if field is None or not field.concrete or field.many_to_many:
            msg = f"{self.model.__name__} has no column named '{name}'"
            raise InvalidQuery(msg)

    def _check_attribute(self, name: str) -> None:
        if name in self._aliases():
            return
        resolve_key(self.model, name)

    def _aliases(self) -> set[str]:
        return {alias for alias, _ in self._state.annotations}

    # -- associations --

    def joins(self, *paths: Any) -> Relation:
        return self._spawn(joins=_union(self._state.joins, self._association_paths(paths)))

    def left_outer_joins(self, *paths: Any) -> Relation:
        return self._spawn(left_outer_joins=_union(self._state.left_outer_joins, self._association_paths(paths)))

    def includes(self, *paths: Any) -> Relation:
        return self._spawn(includes=_union(self._state.includes, self._association_paths(paths)))

    def preload(self, *paths: Any) -> Relation:
        return self._spawn(preload=_union(self._state.preload, self._association_paths(paths)))

    def eager_load(self, *paths: Any) -> Relation:
        return self._spawn(eager_load=_union(self._state.eager_load, self._association_paths(paths)))

    def _association_paths(self, specs: tuple[Any, ...]) -> list[str]:
        try:
            paths = flatten_paths(*specs)
        except TypeError as exc:
            raise InvalidQuery(str(exc)) from exc

        for path in paths:
            self._lookup(path)
        return paths

    def _lookup(self, path: str) -> str:
        # association names to the django lookup path, expanding has-many-through associations
        model = self.model
        lookups = []
        for name in split_path(path):
            association = registry.schema_for(model).association(name)
            lookups.append(association.lookup)
            model = association.target
        return "__".join(lookups)

    # -- composition --

    def merge(self, other: Relation) -> Relation:
        """
        Combines the clauses of both relations. Conditions of `other` on an attribute replace this relation's
        conditions on the same attribute, everything else is combined.
        """
        self._check_same_model(other, "merge")
        mine, theirs = self._state, other._state

        overridden = frozenset().union(*(condition.attributes for condition in theirs.where))
        where = tuple(condition for condition in mine.where if not condition.attributes & overridden)
        overridden_having = frozenset().union(*(condition.attributes for condition in theirs.having))
        having = tuple(condition for condition in mine.having if not condition.attributes & overridden_having)

        annotations = dict(mine.annotations)
        annotations.update(theirs.annotations)

        return self._spawn(
            where=where + theirs.where,
            order=_union(mine.order, theirs.order),
            group=_union(mine.group, theirs.group),
            having=having + theirs.having,
            limit=theirs.limit if theirs.limit is not None else mine.limit,
            offset=theirs.offset if theirs.offset is not None else mine.offset,
            select=_union(mine.select, theirs.select),
            annotations=tuple(annotations.items()),
            distinct=mine.distinct or theirs.distinct,
            joins=_union(mine.joins, theirs.joins),
            left_outer_joins=_union(mine.left_outer_joins, theirs.left_outer_joins),
            includes=_union(mine.includes, theirs.includes),
            preload=_union(mine.preload, theirs.preload),
            eager_load=_union(mine.eager_load, theirs.eager_load),
            lock=theirs.lock if theirs.lock is not None else mine.lock,
            readonly=mine.readonly or theirs.readonly,
            strict_loading=mine.strict_loading or theirs.strict_loading,
            none=mine.none or theirs.none,
        )

    def unscope(self, *kinds: str, where: str | Iterable[str] | None = None) -> Relation:
        changes: dict[str, Any] = {}
        for kind in kinds:
            changes.update(_cleared(kind))

        if where is not None:
            names = [where] if isinstance(where, str) else list(where)
            paths = frozenset(resolve_key(self.model, name).path for name in names)
            remaining = changes.get("where", self._state.where)
            changes["where"] = tuple(condition for condition in remaining if not condition.attributes & paths)

        return self._spawn(**changes)

    def only(self, *kinds: str) -> Relation:
        for kind in kinds:
            _cleared(kind)
        return self.unscope(*(kind for kind in CLAUSES if kind not in kinds))

    def unscoped(self, block: Callable[[Relation], Any] | None = None) -> Any:
        """
        The model's relation without its default scope (and without any clause of this relation).

        With a block, calls it with the unscoped relation and returns what it returns, so scopes chained inside
        the block are built without the default scope too.

        >> Book.relation.unscoped(lambda books: books.out_of_print().count())
        """
        relation = type(self)(self.model)
        if self._state.none:
            relation = relation.none()
        if block is None:
            return relation
        return block(relation)

    def _check_same_model(self, other: Relation, operation: str) -> None:
        if not isinstance(other, Relation):
            msg = f"{operation}() expects a Relation, got {other!r}"
            raise InvalidQuery(msg)
        if other.model is not self.model:
            msg = f"Cannot {operation} a {other.model.__name__} relation into a {self.model.__name__} relation"
            raise InvalidQuery(msg)

    # -- record flags --

    def lock(self, mode: bool | str = True) -> Relation:
        if mode is False or mode is None:
            return self._spawn(lock=None)

        key = "update" if mode is True else mode
        try:
            return self._spawn(lock=LOCK_MODES[key])
        except (KeyError, TypeError):
            msg = f"Unknown lock mode {mode!r}, expected one of: {', '.join(LOCK_MODES)}"
            raise InvalidQuery(msg) from None

    def readonly(self, value: bool = True) -> Relation:
        return self._spawn(readonly=bool(value))

    def strict_loading(self, value: bool = True) -> Relation:
        return self._spawn(strict_loading=bool(value))

    # -- compilation --

    def to_queryset(self, *, values: Iterable[str] | None = None, flat: bool = False) -> models.QuerySet:
        """
        Compiles the relation into a django queryset. Does not touch the database.

        `values` turns it into a values_list queryset, applied before the limit and offset.
        """
        state = self._state
        queryset = self.model._base_manager.all()
        if state.none:
            return queryset.none()

        condition = combine(state.where)
        for path in state.joins:
            condition &= Q(**{f"{self._lookup(path)}__isnull": False})
        if condition:
            queryset = queryset.filter(condition)

        # aliases after the filter, so that they reuse its joins
        for index, path in enumerate(state.left_outer_joins):
            queryset = queryset.alias(**{f"_left_outer_join_{index}": F(f"{self._lookup(path)}__pk")})

        if state.group:
            queryset = queryset.values(*state.group)
            if state.annotations:
                queryset = queryset.annotate(**dict(state.annotations))
            else:
                queryset = queryset.distinct()
            if state.having:
                queryset = queryset.filter(combine(state.having))
            queryset = queryset.order_by(*state.order)
        else:
            if state.having:
                msg = "having() needs a group() to apply to"
                raise InvalidQuery(msg)
            if state.select and values is None:
                queryset = queryset.only(*state.select, *self._preloaded_foreign_keys())
            if state.annotations:
                queryset = queryset.annotate(**dict(state.annotations))
            if state.order:
                queryset = queryset.order_by(*state.order)

        if state.distinct:
            queryset = queryset.distinct()
        if state.lock is not None:
            queryset = queryset.select_for_update(**dict(state.lock))
        if values is not None:
            queryset = queryset.values_list(*values, flat=flat)

        if state.offset or state.limit is not None:
            start = state.offset or 0
            stop = None if state.limit is None else start + state.limit
            queryset = queryset[start:stop]

        return queryset

    def sql(self) -> tuple[str, tuple]:
        """The SQL and parameters the relation runs when loaded, without running it."""
        if self._state.none:
            return "", ()
        return self.to_queryset().query.sql_with_params()

    def id_subquery(self) -> models.QuerySet:
        column = self._state.select[0] if len(self._state.select) == 1 else "pk"
        return self.to_queryset(values=(column,), flat=True)

    # -- loading --

    def __iter__(self) -> Iterator[Any]:
        return iter(self._load())

    def to_list(self) -> list[Any]:
        return self._load()

    def _load(self) -> list[Any]:
        state = self._state
        if state.none:
            logger.debug("Skipping query for an empty %s relation", self.model.__name__)
            return []

        self._check_lock()

        if state.group:
            return list(self.to_queryset())

        joined, preloaded = self._loading_strategy()
        if joined:
            logger.debug("Loading %s with joined associations %s", self.model.__name__, joined)
            records = EagerJoinLoader(self, joined).load()
        else:
            records = list(self.to_queryset())

        if preloaded and records:
            logger.debug("Preloading %s for %d %s records", preloaded, len(records), self.model.__name__)
            Preloader(self.model, preloaded).preload(records)

        self._mark(records)
        return records

    def _loading_strategy(self) -> tuple[list[str], list[str]]:
        """
        Splits the associations to load into the ones joined into the main query and the ones preloaded with a
        query each. Associations referenced by a condition and the ones passed to eager_load are joined.
        """
        state = self._state
        referenced = frozenset().union(*(condition.references for condition in state.where))
        roots = {split_path(path)[0] for path in state.eager_load}
        roots.update(split_path(path)[0] for path in state.includes if split_path(path)[0] in referenced)

        joined = [path for path in (*state.eager_load, *state.includes) if split_path(path)[0] in roots]
        preloaded = [
            path for path in (*state.includes, *state.preload) if split_path(path)[0] not in roots
        ]
        return list(dict.fromkeys(joined)), list(dict.fromkeys(preloaded))

    def _preloaded_foreign_keys(self) -> list[str]:
        # preloading a belongs-to reads the foreign key of every record
        schema = registry.schema_for(self.model)
        keys = []
        for path in self._loading_strategy()[1]:
            association = schema.association(split_path(path)[0])
            if not association.many:
                keys.append(association.foreign_key)
        return keys

    def _mark(self, records: list[Any]) -> None:
        state = self._state
        if state.group or not (state.readonly or state.strict_loading or state.select):
            return

        selected = None
        if state.select:
            opts = self.model._meta
            selected = frozenset(
                {opts.pk.attname} | {opts.pk.attname if name == "pk" else opts.get_field(name).attname
                                     for name in state.select}
            )

        for record in records:
            if state.readonly:
                record._readonly = True
            if state.strict_loading:
                record._strict_loading = True
            if selected is not None:
                record._selected_fields = selected

    def _check_lock(self) -> None:
        if self._state.lock is None:
            return
        using = router.db_for_read(self.model)
        if not transaction.get_connection(using).in_atomic_block:
            msg = "Locking rows needs a transaction, wrap the code in transaction.atomic() or use with_lock()"
            raise InvalidQuery(msg)

    # -- single records --

    def take(self, limit: int | None = None) -> Any:
        records = self.limit(1 if limit is None else limit)._load()
        if limit is not None:
            return records
        return records[0] if records else None

    def first(self, limit: int | None = None) -> Any:
        relation = self if self._state.order else self.order("pk")
        return relation.take(limit)

    def last(self, limit: int | None = None) -> Any:
        records = self.reverse_order().take(1 if limit is None else limit)
        if limit is not None:
            return records[::-1]
        return records[0] if records else None

    def first_or_raise(self) -> Any:
        record = self.first()
        if record is None:
            msg = f"Couldn't find {self.model.__name__}"
            raise NotFound(msg)
        return record

    def last_or_raise(self) -> Any:
        record = self.last()
        if record is None:
            msg = f"Couldn't find {self.model.__name__}"
            raise NotFound(msg)
        return record

    def find(self, *pks: Any) -> Any:
        """
        Records by primary key. A single key returns a record, several keys (or a list) a list in the order of the
        keys. Raises NotFound when any of them is missing.
        """
        name = self.model.__name__
        if len(pks) == 1 and not isinstance(pks[0], (list, tuple, set)):
            pk = self.model._meta.pk.to_python(pks[0])
            record = self.filter(pk=pk).take()
            if record is None:
                msg = f"Couldn't find {name} with 'id'={pk}"
                raise NotFound(msg)
            return record

        wanted = [self.model._meta.pk.to_python(pk) for pk in flatten_ids(pks)]
        if not wanted:
            msg = f"Couldn't find {name} without an ID"
            raise NotFound(msg)

        found = {record.pk: record for record in self.filter(pk__in=wanted)}
        missing = [pk for pk in wanted if pk not in found]
        if missing:
            msg = (
                f"Couldn't find all {name} records with 'id': {tuple(wanted)} "
                f"(found {len(found)} results, but was looking for {len(set(wanted))})"
            )
            raise NotFound(msg)
        return [found[pk] for pk in wanted]

    def find_by(self, attribute: str, value: Any) -> Any:
        schema = registry.schema_for(self.model)
        if not schema.has_attribute(attribute) and attribute not in schema.associations:
            msg = f"{self.model.__name__} has no attribute named '{attribute}'"
            raise InvalidQuery(msg)
        return self.filter(**{attribute: value}).take()

    def find_by_or_raise(self, attribute: str, value: Any) -> Any:
        record = self.find_by(attribute, value)
        if record is None:
            msg = f"Couldn't find {self.model.__name__} with {attribute}={value!r}"
            raise NotFound(msg)
        return record

    # -- calculations --

    def count(self, field: str | None = None) -> int | dict[Any, int]:
        if field is None and not self._state.group:
            if self._state.none:
                return 0
            queryset = self.unscope("order", "lock").to_queryset()
            if self._loading_strategy()[0] and not queryset.query.is_sliced:
                return queryset.aggregate(_value=Count("pk", distinct=True))["_value"]
            return queryset.count()
        return self._calculate(Count, field or "pk", default=0)

    def sum(self, field: str) -> Any:
        return self._calculate(Sum, field)

    def average(self, field: str) -> Any:
        return self._calculate(Avg, field)

    def minimum(self, field: str) -> Any:
        return self._calculate(Min, field)

    def maximum(self, field: str) -> Any:
        return self._calculate(Max, field)

    def _calculate(self, function: type[models.Aggregate], field: str, default: Any = None) -> Any:
        self._check_attribute(field)
        state = self._state
        if state.none:
            return {} if state.group else default

        expression = function(field)
        if not state.group:
            queryset = self.unscope("order", "lock").to_queryset()
            value = queryset.aggregate(_value=expression)["_value"]
            return default if value is None else value

        relation = self._spawn(annotations=state.annotations + (("_value", expression),), order=(), lock=None)
        results = {}
        for row in relation.to_queryset():
            key = row[state.group[0]] if len(state.group) == 1 else tuple(row[name] for name in state.group)
            results[key] = row["_value"]
        return results

    def exists(self) -> bool:
        if self._state.none:
            return False
        return self.unscope("lock").to_queryset().exists()

    def pluck(self, *fields: str) -> list[Any]:
        if not fields:
            msg = "pluck() needs at least one field"
            raise InvalidQuery(msg)
        for name in fields:
            self._check_attribute(name)

        if self._state.none:
            return []
        self._check_lock()
        return list(self.to_queryset(values=fields, flat=len(fields) == 1))

    def ids(self) -> list[Any]:
        return self.pluck("pk")

    # -- batches --

    def batches(
        self, batch_size: int | None = None, start: Any = None, finish: Any = None, *, each: bool = False
    ) -> Batches:
        return Batches(self, batch_size, start, finish, each=each)

    def find_in_batches(self, batch_size: int | None = None, start: Any = None, finish: Any = None) -> Batches:
        return self.batches(batch_size, start, finish)

    def find_each(self, batch_size: int | None = None, start: Any = None, finish: Any = None) -> Batches:
        return self.batches(batch_size, start, finish, each=True)

    # -- writes --

    def new(self, **attributes: Any) -> models.Model:
        """A new, unsaved record, with the relation's equality conditions as its starting attributes."""
        seeded = {}
        for condition in self._state.where:
            for name, value in condition.equality:
                field = self.model._meta.get_field(name)
                if field.is_relation and not isinstance(value, models.Model):
                    name = field.attname
                seeded[name] = value
        seeded.update(attributes)
        return self.model(**seeded)

    def create(self, **attributes: Any) -> models.Model:
        record = self.new(**attributes)
        record.save()
        return record

    def update_all(self, **values: Any) -> int:
        if self._state.none:
            return 0
        return self._write_queryset().update(**values)

    def delete_all(self) -> int:
        if self._state.none:
            return 0
        _, deleted = self._write_queryset().delete()
        return deleted.get(self.model._meta.label, 0)

    def _write_queryset(self) -> models.QuerySet:
        if self._state.limit is not None or self._state.offset:
            msg = "update_all() and delete_all() cannot be used on a limited relation"
            raise InvalidQuery(msg)
        return self.only("where", "joins").to_queryset()


def flatten_ids(pks: Iterable[Any]) -> list[Any]:
    flat = []
    for pk in pks:
        if isinstance(pk, (list, tuple, set)):
            flat.extend(pk)
        else:
            flat.append(pk)
    return flat


class RelationDescriptor:
    """
    Gives a model class its relation, `Model.relation` returns a fresh default-scoped relation on every access.
    Like django managers, it is not reachable from model instances.
    """

    def __init__(self, relation_class: type[Relation] = Relation):
        self.relation_class = relation_class

    def __get__(self, instance: models.Model | None, owner: type[models.Model]) -> Relation:
        if instance is not None:
            msg = f"Relation isn't accessible via {owner.__name__} instances"
            raise AttributeError(msg)
        return self.relation_class.for_model(owner)
