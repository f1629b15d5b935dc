from __future__ import annotations

__all__ = ["flatten_paths", "path_tree", "split_path"]

from collections.abc import Iterable, Mapping
from typing import Any


def split_path(name: str) -> list[str]:
    """
    The association names of a path, `books.reviews` and `books__reviews` both give `["books", "reviews"]`.
    """
    key_to_use = "__" if "__" in name else "."
    return [key for key in name.split(key_to_use) if key]


def flatten_paths(*specs: Any) -> list[str]:
    """
    Turns any mix of association path notations into a flat list of `__` separated paths.

    >> flatten_paths("author", "books.reviews", {"books": ["reviews", {"orders": "customer"}]})
    ['author', 'books__reviews', 'books__reviews', 'books__orders__customer']

    A nested entry also implies its parent, `books__reviews` loads `books` too.
    """
    paths: list[str] = []

    for spec in specs:
        if isinstance(spec, str):
            parts = split_path(spec)
            if parts:
                paths.append("__".join(parts))
        elif isinstance(spec, Mapping):
            for parent, children in spec.items():
                parent_path = "__".join(split_path(parent))
                nested = flatten_paths(children)
                if nested:
                    paths.extend(f"{parent_path}__{child}" for child in nested)
                else:
                    paths.append(parent_path)
        elif isinstance(spec, Iterable):
            paths.extend(flatten_paths(*spec))
        else:
            msg = f"Association paths have to be strings, lists or dicts, got {spec!r}"
            raise TypeError(msg)

    return paths


def path_tree(paths: Iterable[str]) -> dict[str, dict]:
    # {"books": {"reviews": {}}, "author": {}}, insertion ordered
    tree: dict[str, dict] = {}
    for path in paths:
        node = tree
        for key in split_path(path):
            node = node.setdefault(key, {})
    return tree
