from __future__ import annotations

__all__ = ["Condition", "Range", "Raw", "build_conditions", "combine", "resolve_key"]

import dataclasses
import operator
from collections.abc import Iterable, Mapping
from functools import reduce
from typing import Any

from django.core.exceptions import FieldDoesNotExist
from django.db import models
from django.db.models import BooleanField, Q
from django.db.models.expressions import RawSQL

from ._enums import EnumField
from ._exceptions import InvalidQuery
from ._paths import split_path
from ._registry import registry


@dataclasses.dataclass(frozen=True)
class Range:
    """
    An inclusive range condition, `Range(1975)` is everything from 1975 on, `Range(high=1975, exclusive=True)`
    everything before it.
    """

    low: Any = None
    high: Any = None
    exclusive: bool = False

    def __post_init__(self):
        if self.low is None and self.high is None:
            msg = "A Range needs at least one bound"
            raise InvalidQuery(msg)


@dataclasses.dataclass(frozen=True)
class Raw:
    """
    A raw SQL condition with %s placeholders. Parameters are always passed to the database driver separately, never
    interpolated.

    >> Book.relation.filter(Raw("price > %s", [500]))
    """

    sql: str
    params: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, "params", tuple(self.params))

        if self.sql.count("%s") != len(self.params):
            msg = f"Raw condition {self.sql!r} has {self.sql.count('%s')} placeholders but {len(self.params)} params"
            raise InvalidQuery(msg)

    def as_q(self) -> Q:
        return Q(RawSQL(self.sql, self.params, output_field=BooleanField()))


@dataclasses.dataclass(frozen=True)
class Condition:
    """
    One filter of a relation.

    `attributes` are the field paths the condition constrains - a later condition on the same attribute replaces
    this one when relations are merged or rewhere'd, and `unscope(where=...)` removes it. Raw conditions have no
    attributes. `references` are the associations the condition goes through, which decide the eager loading
    strategy. `equality` holds plain `attribute = value` pairs, used to seed records created from the relation.
    """

    q: Q
    attributes: frozenset[str] = frozenset()
    references: frozenset[str] = frozenset()
    equality: tuple[tuple[str, Any], ...] = ()


@dataclasses.dataclass(frozen=True)
class ResolvedKey:
    path: str
    lookups: tuple[str, ...]
    field: Any
    references: frozenset[str]
    nullable: bool
    multi_valued: bool

    @property
    def local(self) -> bool:
        return "__" not in self.path


def resolve_key(model: type[models.Model], key: str) -> ResolvedKey:
    parts = split_path(key)
    if not parts:
        msg = f"Empty filter key on {model.__name__}"
        raise InvalidQuery(msg)

    schema = registry.schema_for(model)
    references = frozenset()
    association = schema.associations.get(parts[0])
    if association is not None:
        references = frozenset({parts[0]})
        if association.through:
            parts = split_path(association.lookup) + parts[1:]

    opts = model._meta
    field = None
    names = []
    nullable = False
    multi_valued = False

    for part in parts:
        if field is not None:
            if not field.is_relation:
                break
            opts = field.related_model._meta

        try:
            next_field = opts.pk if part == "pk" else opts.get_field(part)
        except FieldDoesNotExist:
            if field is None:
                msg = f"{model.__name__} has no field or association named '{part}'"
                raise InvalidQuery(msg) from None
            break

        field = next_field
        names.append(field.name if part != "pk" else opts.pk.name)
        if field.many_to_many or field.one_to_many:
            multi_valued = True
        elif getattr(field, "null", False):
            nullable = True

    lookups = tuple(parts[len(names) :])
    if lookups:
        get_transform = getattr(field, "get_transform", None)
        transform = get_transform(lookups[0]) if get_transform is not None else None
        if field.get_lookup(lookups[0]) is None and transform is None:
            msg = f"Unsupported lookup '{lookups[0]}' for {key} on {model.__name__}"
            raise InvalidQuery(msg)

    return ResolvedKey(
        path="__".join(names),
        lookups=lookups,
        field=field,
        references=references,
        nullable=nullable,
        multi_valued=multi_valued,
    )


def combine(conditions: Iterable[Condition], connector=operator.and_) -> Q:
    return reduce(connector, (condition.q for condition in conditions), Q())


def build_conditions(
    model: type[models.Model],
    args: Iterable[Any],
    kwargs: Mapping[str, Any],
    *,
    negate: bool = False,
    aliases: Iterable[str] = (),
) -> list[Condition]:
    """
    Translates filter input into conditions. Each keyword argument becomes its own condition, so that it can be
    replaced separately. A negated filter becomes one condition, NOT of all of its parts.

    `aliases` are annotation names (from select) which can be referenced as is, in having for example.
    """
    aliases = frozenset(aliases)
    conditions = [_arg_condition(model, arg, aliases) for arg in args]
    for key, value in kwargs.items():
        conditions.extend(_kwarg_conditions(model, key, value, aliases))

    if not negate or not conditions:
        return conditions

    positive = combine(conditions)
    guards = Q()
    for condition in conditions:
        for attribute, nullable in _null_guards(model, condition):
            if nullable:
                guards &= Q(**{f"{attribute}__isnull": False})

    return [
        Condition(
            q=guards & ~positive,
            attributes=frozenset().union(*(condition.attributes for condition in conditions)),
            references=frozenset().union(*(condition.references for condition in conditions)),
        )
    ]


def _arg_condition(model: type[models.Model], arg: Any, aliases: frozenset[str]) -> Condition:
    if isinstance(arg, Raw):
        return Condition(q=arg.as_q())

    if isinstance(arg, Q):
        attributes = set()
        references = set()
        for key in _q_keys(arg):
            if split_path(key)[0] in aliases:
                attributes.add(key)
                continue
            resolved = resolve_key(model, key)
            attributes.add(resolved.path)
            references.update(resolved.references)
        return Condition(q=arg, attributes=frozenset(attributes), references=frozenset(references))

    if getattr(arg, "conditional", False):
        return Condition(q=Q(arg))

    msg = f"Cannot filter {model.__name__} by {arg!r}, use keyword arguments, Q, Raw or a boolean expression"
    raise InvalidQuery(msg)


def _kwarg_conditions(model: type[models.Model], key: str, value: Any, aliases: frozenset[str]) -> list[Condition]:
    from ._relation import Relation

    if split_path(key)[0] in aliases:
        return [Condition(q=Q(**{key: value}), attributes=frozenset({key}))]

    if isinstance(value, Mapping):
        # nested conditions on an association, books={"out_of_print": True}
        schema = registry.schema_for(model)
        schema.association(split_path(key)[0])
        conditions = []
        for nested_key, nested_value in value.items():
            conditions.extend(_kwarg_conditions(model, f"{key}__{nested_key}", nested_value, aliases))
        return conditions

    resolved = resolve_key(model, key)
    path = resolved.path
    equality = ()

    if isinstance(value, Range):
        if resolved.lookups:
            msg = f"A Range cannot be combined with the lookup in '{key}'"
            raise InvalidQuery(msg)
        bounds = {}
        if value.low is not None:
            bounds[f"{path}__gte"] = value.low
        if value.high is not None:
            bounds[f"{path}__lt" if value.exclusive else f"{path}__lte"] = value.high
        q = Q(**bounds)
    elif isinstance(value, Relation):
        lookup = "__".join((path, *resolved.lookups)) if resolved.lookups else f"{path}__in"
        q = Q(**{lookup: value.id_subquery()})
    elif resolved.lookups:
        _check_enum(resolved, value)
        q = Q(**{"__".join((path, *resolved.lookups)): value})
    elif value is None:
        q = Q(**{f"{path}__isnull": True})
    elif isinstance(value, (list, tuple, set, frozenset)):
        _check_enum(resolved, value)
        q = Q(**{f"{path}__in": list(value)})
    else:
        _check_enum(resolved, value)
        q = Q(**{path: value})
        if resolved.local:
            equality = ((path, value),)

    return [
        Condition(
            q=q,
            attributes=frozenset({path}),
            references=resolved.references,
            equality=equality,
        )
    ]


def _check_enum(resolved: ResolvedKey, value: Any) -> None:
    if not isinstance(resolved.field, EnumField) or resolved.lookups not in ((), ("exact",), ("in",)):
        return

    values = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
    for item in values:
        resolved.field.coerce(item)


def _null_guards(model: type[models.Model], condition: Condition) -> list[tuple[str, bool]]:
    guards = []
    for attribute in condition.attributes:
        try:
            resolved = resolve_key(model, attribute)
        except InvalidQuery:
            continue
        if resolved.multi_valued or _tests_null(condition.q, attribute):
            continue
        guards.append((attribute, resolved.nullable))
    return guards


def _tests_null(q: Q, attribute: str) -> bool:
    return any(key == f"{attribute}__isnull" for key in _q_keys(q))


def _q_keys(q: Q) -> list[str]:
    keys = []
    for child in q.children:
        if isinstance(child, Q):
            keys.extend(_q_keys(child))
        elif isinstance(child, tuple):
            keys.append(child[0])
    return keys
