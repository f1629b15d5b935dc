from __future__ import annotations

__all__ = ["EnumField"]

import enum
from typing import Any

from django.db import models
from django.db.models.query_utils import DeferredAttribute

from ._exceptions import InvalidQuery, ValidationFailed


class EnumDescriptor(DeferredAttribute):
    # coerces names and raw integers to enum members on assignment
    def __set__(self, instance, value):
        instance.__dict__[self.field.attname] = self.field.coerce(value)


class EnumField(models.IntegerField):
    """
    An integer column holding one value of a closed set, declared with django's IntegerChoices.

    >> class Status(models.IntegerChoices):
    >>     SHIPPED = 0
    >>     COMPLETE = 1
    >>
    >> status = EnumField(Status)

    Values are read back as enum members, and can be assigned as members, integers or names ("shipped"). For every
    member the field generates on the model a predicate and a mutator, `is_shipped()` and `mark_shipped()`, and on
    the model's relations the scopes `shipped()` and `not_shipped()` (see Registry).
    """

    descriptor_class = EnumDescriptor

    def __init__(self, enum_class: type[models.IntegerChoices], *args: Any, **kwargs: Any):
        self.enum = enum_class
        kwargs.setdefault("choices", enum_class.choices)
        super().__init__(*args, **kwargs)

    def deconstruct(self):
        name, path, args, kwargs = super().deconstruct()
        kwargs.pop("choices", None)
        return name, path, [self.enum, *args], kwargs

    def coerce(self, value: Any) -> enum.Enum | None:
        if value is None or isinstance(value, self.enum):
            return value

        if isinstance(value, str):
            try:
                return self.enum[value.upper()]
            except KeyError:
                pass
        else:
            try:
                return self.enum(value)
            except ValueError:
                pass

        valid = ", ".join(member.name.lower() for member in self.enum)
        msg = f"'{value}' is not a valid {self.name}, expected one of: {valid}"
        raise InvalidQuery(msg)

    def from_db_value(self, value, expression, connection):
        if value is None:
            return value
        return self.enum(value)

    def to_python(self, value):
        return self.coerce(value)

    def get_prep_value(self, value):
        value = self.coerce(value)
        return super().get_prep_value(None if value is None else value.value)

    def contribute_to_class(self, cls, name, private_only=False):
        super().contribute_to_class(cls, name, private_only=private_only)

        if cls._meta.abstract:
            return

        for member in self.enum:
            label = member.name.lower()
            setattr(cls, f"is_{label}", _predicate(name, member))
            setattr(cls, f"mark_{label}", _mutator(name, member))


def _predicate(field_name: str, member: enum.Enum):
    def predicate(self) -> bool:
        return getattr(self, field_name) == member

    predicate.__name__ = f"is_{member.name.lower()}"
    return predicate


def _mutator(field_name: str, member: enum.Enum):
    def mutator(self) -> bool:
        setattr(self, field_name, member)
        try:
            self.save()
        except ValidationFailed:
            return False
        return True

    mutator.__name__ = f"mark_{member.name.lower()}"
    mutator.__doc__ = f"Sets {field_name} to {member.name.lower()} and saves. Returns False if validation failed."
    return mutator
