from __future__ import annotations

__all__ = [
    "Association",
    "AssociationKind",
    "AssociationOptions",
    "EntitySchema",
    "Registry",
    "register",
    "registry",
]

import dataclasses
import enum
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from django.core.exceptions import ImproperlyConfigured
from django.db import models
from django.db.models import ForeignObjectRel

from ._enums import EnumField
from ._exceptions import InvalidQuery

if TYPE_CHECKING:
    from ._relation import Relation

logger = logging.getLogger(__name__)

Scope = Callable[["Relation"], "Relation"]


class AssociationKind(str, enum.Enum):
    BELONGS_TO = "belongs_to"
    HAS_MANY = "has_many"
    HAS_AND_BELONGS_TO_MANY = "has_and_belongs_to_many"
    HAS_MANY_THROUGH = "has_many_through"


@dataclasses.dataclass(frozen=True)
class AssociationOptions:
    """
    Extra behaviour for an association that django's field declarations cannot express.

    `scope` receives the target model's relation and returns it narrowed or ordered, it is applied whenever the
    association is loaded, eagerly or lazily. `strict_loading` makes every lazy load of the association raise a
    LazyLoadViolation, so it has to be preloaded.
    """

    scope: Scope | None = None
    strict_loading: bool = False


@dataclasses.dataclass(frozen=True)
class Association:
    """
    Relationship metadata of one association of `model`.

    `lookup` is the django lookup path from `model` to `target` (used for joins and filters), `back_path` the path
    from `target` back to `model` (used to fetch the targets of many owners at once).
    A through association reaches its targets over `via`, whose target records are restricted by their own relation
    along `via_path`.
    """

    name: str
    kind: AssociationKind
    model: type[models.Model]
    target: type[models.Model]
    lookup: str
    back_path: str
    foreign_key: str | None = None
    join_table: str | None = None
    scope: Scope | None = None
    strict_loading: bool = False
    via: Association | None = None
    via_path: str | None = None

    @property
    def many(self) -> bool:
        return self.kind is not AssociationKind.BELONGS_TO

    @property
    def through(self) -> bool:
        return self.kind is AssociationKind.HAS_MANY_THROUGH

    def target_relation(self) -> Relation:
        relation = self.target.relation
        if self.scope is not None:
            relation = self.scope(relation)
        if self.via is not None:
            relation = relation.filter(**{self.via_path: self.via.target_relation()})
        return relation

    def relation_for(self, owner: models.Model) -> Relation:
        if not self.many:
            return self.target_relation().filter(pk=getattr(owner, self.foreign_key))

        relation = self.target_relation().filter(**{self.back_path: owner.pk})
        if self.through:
            relation = relation.distinct()
        return relation


@dataclasses.dataclass(frozen=True)
class EntitySchema:
    model: type[models.Model]
    default_scope: Scope | None
    associations: dict[str, Association]
    scopes: dict[str, Callable[..., Relation]]
    locking_column: str | None
    required_fields: tuple[str, ...]
    attributes: frozenset[str]

    def association(self, name: str) -> Association:
        try:
            return self.associations[name]
        except KeyError:
            msg = f"Association named '{name}' was not found on {self.model.__name__}"
            raise InvalidQuery(msg) from None

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes


class Registry:
    """
    Schema registry consulted by relations: associations, default scopes, enum scopes, locking columns and required
    fields of every model.

    Options are registered with the `register` decorator when the model class is created, but the schema itself is
    only built on first use - reverse relations are known to django only once all apps are loaded.
    """

    def __init__(self):
        self._options: dict[type[models.Model], dict[str, Any]] = {}
        self._schemas: dict[type[models.Model], EntitySchema] = {}

    def register(
        self,
        *,
        default_scope: Scope | None = None,
        associations: dict[str, AssociationOptions] | None = None,
        through: dict[str, tuple[str, str]] | None = None,
        locking_column: str | None = None,
        required: tuple[str, ...] | list[str] = (),
    ) -> Callable[[type[models.Model]], type[models.Model]]:
        """
        `through` declares has-many-through associations, as `{name: (through_association, source_association)}`.
        For example a supplier's authors through its books is `{"authors": ("books", "author")}`.
        """

        def decorator(model: type[models.Model]) -> type[models.Model]:
            self._options[model] = {
                "default_scope": default_scope,
                "associations": dict(associations or {}),
                "through": dict(through or {}),
                "locking_column": locking_column,
                "required": tuple(required),
            }
            self._schemas.pop(model, None)
            return model

        return decorator

    def schema_for(self, model: type[models.Model]) -> EntitySchema:
        try:
            return self._schemas[model]
        except KeyError:
            pass

        schema = self._build(model)
        self._schemas[model] = schema
        logger.debug("Built schema for %s with associations %s", model.__name__, sorted(schema.associations))
        return schema

    def _build(self, model: type[models.Model]) -> EntitySchema:
        options = self._options.get(model, {})
        association_options: dict[str, AssociationOptions] = options.get("associations", {})

        associations = {}
        for association in self._django_associations(model):
            extra = association_options.get(association.name)
            if extra is not None:
                association = dataclasses.replace(
                    association, scope=extra.scope, strict_loading=extra.strict_loading
                )
            associations[association.name] = association

        for name, (through_name, source_name) in options.get("through", {}).items():
            associations[name] = self._through_association(
                model, name, associations, through_name, source_name, association_options.get(name)
            )

        unknown = set(association_options) - set(associations)
        if unknown:
            msg = f"Options given for unknown associations of {model.__name__}: {', '.join(sorted(unknown))}"
            raise ImproperlyConfigured(msg)

        attributes = {"pk"}
        for field in model._meta.concrete_fields:
            attributes.update((field.name, field.attname))

        locking_column = options.get("locking_column")
        required = options.get("required", ())
        for name in (locking_column, *required):
            if name is not None and name not in attributes:
                msg = f"{model.__name__} has no field named '{name}'"
                raise ImproperlyConfigured(msg)

        enums = {
            field.name: field for field in model._meta.concrete_fields if isinstance(field, EnumField)
        }
        scopes = {}
        for field_name, field in enums.items():
            for member in field.enum:
                label = member.name.lower()
                scopes[label] = _enum_scope(field_name, member, negate=False)
                scopes[f"not_{label}"] = _enum_scope(field_name, member, negate=True)

        return EntitySchema(
            model=model,
            default_scope=options.get("default_scope"),
            associations=associations,
            scopes=scopes,
            locking_column=locking_column,
            required_fields=required,
            attributes=frozenset(attributes),
        )

    @staticmethod
    def _django_associations(model: type[models.Model]) -> list[Association]:
        associations = []

        for field in model._meta.get_fields():
            if not field.is_relation or field.related_model is None:
                continue

            reverse = isinstance(field, ForeignObjectRel)
            if not reverse and (field.many_to_one or field.one_to_one):
                associations.append(
                    Association(
                        name=field.name,
                        kind=AssociationKind.BELONGS_TO,
                        model=model,
                        target=field.related_model,
                        lookup=field.name,
                        back_path=field.related_query_name(),
                        foreign_key=field.attname,
                    )
                )
            elif not reverse and field.many_to_many:
                associations.append(
                    Association(
                        name=field.name,
                        kind=AssociationKind.HAS_AND_BELONGS_TO_MANY,
                        model=model,
                        target=field.related_model,
                        lookup=field.name,
                        back_path=field.related_query_name(),
                        join_table=field.m2m_db_table(),
                    )
                )
            elif reverse and field.one_to_many:
                associations.append(
                    Association(
                        name=field.get_accessor_name(),
                        kind=AssociationKind.HAS_MANY,
                        model=model,
                        target=field.related_model,
                        lookup=field.name,
                        back_path=field.field.name,
                        foreign_key=field.field.attname,
                    )
                )
            elif reverse and field.many_to_many:
                associations.append(
                    Association(
                        name=field.get_accessor_name(),
                        kind=AssociationKind.HAS_AND_BELONGS_TO_MANY,
                        model=model,
                        target=field.related_model,
                        lookup=field.name,
                        back_path=field.field.name,
                        join_table=field.field.m2m_db_table(),
                    )
                )
            # reverse one-to-one relations are not associations of their own

        return associations

    def _through_association(
        self,
        model: type[models.Model],
        name: str,
        associations: dict[str, Association],
        through_name: str,
        source_name: str,
        options: AssociationOptions | None,
    ) -> Association:
        try:
            through = associations[through_name]
        except KeyError:
            msg = f"{model.__name__}.{name} goes through '{through_name}', which is not an association"
            raise ImproperlyConfigured(msg) from None

        source = self.schema_for(through.target).associations.get(source_name)
        if source is None or source.through:
            msg = f"{through.target.__name__} has no direct association '{source_name}' for {model.__name__}.{name}"
            raise ImproperlyConfigured(msg)

        options = options or AssociationOptions()
        return Association(
            name=name,
            kind=AssociationKind.HAS_MANY_THROUGH,
            model=model,
            target=source.target,
            lookup=f"{through.lookup}__{source.lookup}",
            back_path=f"{source.back_path}__{through.back_path}",
            scope=options.scope,
            strict_loading=options.strict_loading,
            via=through,
            via_path=source.back_path,
        )


def _enum_scope(field_name: str, member: enum.Enum, *, negate: bool) -> Callable[[Relation], Relation]:
    def scope(relation: Relation) -> Relation:
        if negate:
            return relation.exclude(**{field_name: member})
        return relation.filter(**{field_name: member})

    scope.__name__ = f"not_{member.name.lower()}" if negate else member.name.lower()
    return scope


registry = Registry()
register = registry.register
