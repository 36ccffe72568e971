"""
Semantic JSON equality.

Two documents are equal when they decode to the same structure once arrays
are sorted (array order is ignored) and, optionally, empty values pruned.
"""

import json
from typing import Any


def are_equal(
    a: str,
    b: str,
    prune_empty_objects: bool = False,
    prune_empty_slices: bool = False,
    prune_empty_strings: bool = False,
) -> bool:
    """Compare two JSON strings for semantic equality, ignoring array ordering."""
    try:
        left = json.loads(a)
        right = json.loads(b)
    except (TypeError, ValueError):
        return False

    options = dict(
        prune_empty_objects=prune_empty_objects,
        prune_empty_slices=prune_empty_slices,
        prune_empty_strings=prune_empty_strings,
    )
    prune(left, **options)
    prune(right, **options)
    canonicalize(left)
    canonicalize(right)
    return json.dumps(left, sort_keys=True) == json.dumps(right, sort_keys=True)


def prune(
    value: Any,
    prune_empty_objects: bool = False,
    prune_empty_slices: bool = False,
    prune_empty_strings: bool = False,
) -> None:
    """Recursively remove empty values from object members, in place."""
    if isinstance(value, list):
        for item in value:
            prune(item, prune_empty_objects, prune_empty_slices, prune_empty_strings)
        return
    if not isinstance(value, dict):
        return

    for key in list(value.keys()):
        member = value[key]
        if isinstance(member, str):
            if prune_empty_strings and member == "":
                del value[key]
        elif member is None:
            if prune_empty_objects:
                del value[key]
        elif isinstance(member, list):
            if not prune_empty_slices:
                continue
            if not member:
                del value[key]
                continue
            prune(member, prune_empty_objects, prune_empty_slices, prune_empty_strings)
        elif isinstance(member, dict):
            if not prune_empty_objects:
                continue
            prune(member, prune_empty_objects, prune_empty_slices, prune_empty_strings)
            if not member:
                del value[key]


def canonicalize(value: Any) -> None:
    """Recursively sort arrays in place by their JSON encoding."""
    if isinstance(value, list):
        for item in value:
            canonicalize(item)
        value.sort(key=lambda item: json.dumps(item, sort_keys=True))
    elif isinstance(value, dict):
        for item in value.values():
            canonicalize(item)
