from __future__ import annotations

__all__ = ["EagerJoinLoader"]

import dataclasses
from typing import TYPE_CHECKING, Any

from django.db import models

from ._paths import path_tree
from ._preload import assign_collection, assign_single
from ._registry import Association, registry

if TYPE_CHECKING:
    from ._relation import Relation


@dataclasses.dataclass
class _Node:
    association: Association
    lookup: str
    parent: int | None
    attnames: list[str]
    start: int = 0
    pk_index: int = 0
    objects: dict[Any, models.Model] = dataclasses.field(default_factory=dict)
    # id(parent object) -> (parent object, {child pk: child})
    children: dict[int, tuple[models.Model, dict[Any, models.Model]]] = dataclasses.field(default_factory=dict)


def _attnames(model: type[models.Model]) -> list[str]:
    return [field.attname for field in model._meta.concrete_fields]


class EagerJoinLoader:
    """
    Loads records of a relation together with associations in a single joined query, the associations' columns are
    read from the joined rows and split back into objects. Rows repeat the parent for every joined child, parents
    and children are deduplicated by primary key.

    The joined query reuses the joins of the relation's conditions, so `Author.relation.includes("books")
    .filter(books__out_of_print=True)` loads only the out of print books of every author.

    When the relation has a limit or offset and a collection is joined, the window would apply to the joined rows,
    so the primary keys of the window are selected first and the joined query is restricted to them.
    """

    def __init__(self, relation: Relation, paths: list[str]):
        self.relation = relation
        self.tree = path_tree(paths)

    def _nodes(self) -> list[_Node]:
        nodes: list[_Node] = []

        def walk(model: type[models.Model], tree: dict[str, dict], prefix: str, parent: int | None) -> None:
            schema = registry.schema_for(model)
            for name, children in tree.items():
                association = schema.association(name)
                lookup = f"{prefix}__{association.lookup}" if prefix else association.lookup
                nodes.append(_Node(association, lookup, parent, _attnames(association.target)))
                walk(association.target, children, lookup, len(nodes) - 1)

        walk(self.relation.model, self.tree, "", None)
        return nodes

    def load(self) -> list[models.Model]:
        model = self.relation.model
        relation = self.relation.unscope("select")
        nodes = self._nodes()

        columns = _attnames(model)
        root_pk_index = columns.index(model._meta.pk.attname)
        for node in nodes:
            node.start = len(columns)
            node.pk_index = node.start + node.attnames.index(node.association.target._meta.pk.attname)
            columns.extend(f"{node.lookup}__{attname}" for attname in node.attnames)

        state = relation.state
        if (state.limit is not None or state.offset) and any(node.association.many for node in nodes):
            window = relation.unscope("includes", "eager_load", "preload").distinct()
            page_ids = list(window.to_queryset(values=("pk",), flat=True))
            relation = relation.unscope("limit", "offset").filter(pk__in=page_ids)

        queryset = relation.to_queryset(values=columns)
        root_attnames = _attnames(model)
        roots: dict[Any, models.Model] = {}

        for row in queryset:
            root_pk = row[root_pk_index]
            root = roots.get(root_pk)
            if root is None:
                root = roots[root_pk] = model.from_db(queryset.db, root_attnames, row[: len(root_attnames)])

            row_objects: list[models.Model | None] = []
            for node in nodes:
                owner = root if node.parent is None else row_objects[node.parent]
                child = None
                if owner is not None:
                    child = self._child(node, row, queryset.db)
                    _, linked = node.children.setdefault(id(owner), (owner, {}))
                    if child is not None:
                        linked.setdefault(child.pk, child)
                row_objects.append(child)

        for node in nodes:
            for owner, linked in node.children.values():
                if node.association.many:
                    assign_collection(owner, node.association, linked.values())
                else:
                    assign_single(owner, node.association, next(iter(linked.values()), None))

        return list(roots.values())

    @staticmethod
    def _child(node: _Node, row: tuple, db: str) -> models.Model | None:
        pk = row[node.pk_index]
        if pk is None:
            return None
        child = node.objects.get(pk)
        if child is None:
            values = row[node.start : node.start + len(node.attnames)]
            child = node.objects[pk] = node.association.target.from_db(db, node.attnames, values)
        return child
