from __future__ import annotations

__all__ = ["Record", "RecordForeignKey", "RecordManager"]

import logging
from collections.abc import Callable
from typing import Any

from django.db import models, router, transaction
from django.db.models.fields.related_descriptors import ForwardManyToOneDescriptor

from ._exceptions import AttributeNotLoaded, InvalidQuery, LazyLoadViolation, NotFound, ReadOnlyViolation, StaleWrite
from ._exceptions import ValidationFailed
from ._preload import assign_collection
from ._registry import Association, registry
from ._relation import Relation

logger = logging.getLogger(__name__)


def _association_name(manager: models.Manager) -> str:
    name = getattr(manager, "prefetch_cache_name", None)
    if name is None:
        name = manager.field.remote_field.get_accessor_name()
    return name


class RecordManager(models.Manager):
    """
    Default manager of records, `Model.objects` follows the model's default scope.

    Related managers (`author.books`) are created from it by django, for them the association scope is applied and
    the load is checked against strict loading.
    """

    def get_queryset(self) -> models.QuerySet:
        relation = self.model.relation
        instance = getattr(self, "instance", None)
        if isinstance(instance, Record):
            name = _association_name(self)
            association = registry.schema_for(type(instance)).associations.get(name)
            instance.check_lazy_load(name, association)
            if association is not None and association.scope is not None:
                relation = association.scope(relation)
        return relation.to_queryset()


class StrictForwardManyToOneDescriptor(ForwardManyToOneDescriptor):
    def get_object(self, instance):
        if isinstance(instance, Record):
            association = registry.schema_for(type(instance)).associations.get(self.field.name)
            instance.check_lazy_load(self.field.name, association)
        return super().get_object(instance)


class RecordForeignKey(models.ForeignKey):
    """A foreign key whose lazy loads are checked against strict loading."""

    forward_related_accessor_class = StrictForwardManyToOneDescriptor


class Record(models.Model):
    """
    Base model of the records queried through relations.

    Adds to django's model:
     - `relation`, the default-scoped Relation of the model, subclasses assign their own Relation subclass with
       `relation = BookRelation.as_descriptor()`
     - required field validation on save, see `register(required=...)`
     - optimistic locking when the model registers a `locking_column`
     - read-only and strict loading flags set by the relation that loaded the record
     - partial records, an attribute not selected by `select()` raises AttributeNotLoaded instead of a query
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = RecordManager()
    relation = Relation.as_descriptor()

    _readonly = False
    _strict_loading = False
    _selected_fields: frozenset[str] | None = None

    class Meta:
        abstract = True

    # -- flags --

    @property
    def is_readonly(self) -> bool:
        return self._readonly

    def mark_readonly(self) -> None:
        self._readonly = True

    @property
    def is_strict_loading(self) -> bool:
        return self._strict_loading

    def mark_strict_loading(self) -> None:
        self._strict_loading = True

    def _check_writable(self, operation: str) -> None:
        if self._readonly:
            msg = f"Cannot {operation} a read-only {type(self).__name__}"
            raise ReadOnlyViolation(msg)

    def check_lazy_load(self, name: str, association: Association | None = None) -> None:
        if self._strict_loading or (association is not None and association.strict_loading):
            msg = f"{type(self).__name__} is marked for strict loading, the {name} association cannot be lazily loaded"
            raise LazyLoadViolation(msg)

    def refresh_from_db(self, using=None, fields=None, **kwargs):
        # django loads a deferred field by refreshing it, partial records do not allow that
        if self._selected_fields is not None and fields:
            missing = [name for name in fields if name not in self._selected_fields]
            if missing:
                msg = f"Attribute '{missing[0]}' of {type(self).__name__} was not selected when the record was loaded"
                raise AttributeNotLoaded(msg)
        return super().refresh_from_db(using=using, fields=fields, **kwargs)

    def reload(self) -> Record:
        self._selected_fields = None
        self._state.fields_cache = {}
        self.refresh_from_db()
        return self

    # -- validation --

    @property
    def errors(self) -> dict[str, list[str]]:
        return dict(getattr(self, "_errors", {}))

    def validate(self) -> None:
        schema = registry.schema_for(type(self))
        deferred = self.get_deferred_fields()
        errors: dict[str, list[str]] = {}

        for name in schema.required_fields:
            field = self._meta.get_field(name)
            if field.attname in deferred:
                continue
            value = getattr(self, field.attname)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.setdefault(name, []).append("can't be blank")

        self._errors = errors
        if errors:
            details = ", ".join(f"{name} {message}" for name, messages in errors.items() for message in messages)
            msg = f"Validation failed: {details}"
            raise ValidationFailed(msg, errors)

    def is_valid(self) -> bool:
        try:
            self.validate()
        except ValidationFailed:
            return False
        return True

    # -- writes --

    def save(self, **kwargs: Any) -> None:
        self._check_writable("save")
        self.validate()

        column = registry.schema_for(type(self)).locking_column
        if column is None:
            return super().save(**kwargs)

        if self._state.adding or kwargs.get("force_insert"):
            if getattr(self, column) is None:
                setattr(self, column, 0)
            return super().save(**kwargs)

        return self._update_with_lock(column, using=kwargs.get("using"), update_fields=kwargs.get("update_fields"))

    def _update_with_lock(self, column: str, using: str | None = None, update_fields=None) -> None:
        using = using or router.db_for_write(type(self), instance=self)
        current = getattr(self, column)
        deferred = self.get_deferred_fields()

        values = {}
        for field in self._meta.concrete_fields:
            if field.primary_key or field.attname == column or field.attname in deferred:
                continue
            if update_fields is not None and field.name not in update_fields and field.attname not in update_fields:
                continue
            values[field.attname] = field.pre_save(self, False)
        values[column] = (current or 0) + 1

        updated = type(self)._base_manager.using(using).filter(pk=self.pk, **{column: current}).update(**values)
        if not updated:
            logger.info("Stale write of %s %s, %s %s no longer matches", type(self).__name__, self.pk, column, current)
            msg = f"Attempted to update a stale {type(self).__name__}, {column} {current} is out of date"
            raise StaleWrite(msg)

        setattr(self, column, values[column])
        self._state.db = using

    def delete(self, **kwargs: Any) -> tuple[int, dict[str, int]]:
        self._check_writable("delete")

        column = registry.schema_for(type(self)).locking_column
        if column is None or self.pk is None:
            return super().delete(**kwargs)

        current = getattr(self, column)
        using = kwargs.get("using") or router.db_for_write(type(self), instance=self)
        deleted = type(self)._base_manager.using(using).filter(pk=self.pk, **{column: current}).delete()
        if not deleted[0]:
            logger.info("Stale delete of %s %s, %s %s no longer matches", type(self).__name__, self.pk, column, current)
            msg = f"Attempted to delete a stale {type(self).__name__}, {column} {current} is out of date"
            raise StaleWrite(msg)

        setattr(self, self._meta.pk.attname, None)
        return deleted

    def update(self, **attributes: Any) -> None:
        for name, value in attributes.items():
            setattr(self, name, value)
        self.save()

    # -- row locks --

    def lock(self, mode: bool | str = True) -> Record:
        """Reloads the record with a row lock, has to be called inside a transaction."""
        fresh = type(self).relation.unscoped().lock(mode).filter(pk=self.pk).take()
        if fresh is None:
            msg = f"Couldn't find {type(self).__name__} with 'id'={self.pk}"
            raise NotFound(msg)

        for field in self._meta.concrete_fields:
            setattr(self, field.attname, getattr(fresh, field.attname))
        self._state.fields_cache = {}
        self._selected_fields = None
        return self

    def with_lock(self, block: Callable[[Record], Any], mode: bool | str = True) -> Any:
        """
        Runs `block` with the record locked in a new transaction, which is committed when the block returns and
        rolled back when it raises.

        >> customer.with_lock(lambda customer: customer.update(visits=customer.visits + 1))
        """
        if self.pk is None:
            msg = f"Cannot lock an unsaved {type(self).__name__}"
            raise InvalidQuery(msg)

        with transaction.atomic(using=router.db_for_write(type(self), instance=self)):
            self.lock(mode)
            return block(self)

    # -- associations --

    def association(self, name: str) -> Any:
        """
        The loaded value of an association: the target record of a belongs-to, a list of records otherwise. Preloaded
        values are returned as they are, anything else is loaded now (subject to strict loading) and kept.
        """
        association = registry.schema_for(type(self)).association(name)
        if not association.many:
            return getattr(self, name)

        cache = getattr(self, "_prefetched_objects_cache", {})
        if name in cache:
            return list(cache[name])

        self.check_lazy_load(name, association)
        records = association.relation_for(self).to_list()
        assign_collection(self, association, records)
        return records

    def association_relation(self, name: str) -> Relation:
        """A relation of the association's targets, an explicit query which is never subject to strict loading."""
        return registry.schema_for(type(self)).association(name).relation_for(self)
