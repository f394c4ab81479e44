"""Field-level comparison of two versions of the same entity.

Identity and bookkeeping fields are ignored. Fields a model lists in
``UNORDERED_FIELDS`` are compared as sets, so two stores that only differ in
the order of, say, character presence compare equal.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

IGNORED_FIELDS = frozenset({"id", "created_at", "updated_at"})


def comparable_dump(entity: BaseModel) -> dict[str, Any]:
    """Dump *entity* in a form where equal content means equal dicts."""
    unordered: frozenset[str] = getattr(entity, "UNORDERED_FIELDS", frozenset())
    data = entity.model_dump(mode="json", exclude=set(IGNORED_FIELDS))
    for name in unordered & data.keys():
        values = data[name] or []
        data[name] = sorted(json.dumps(v, sort_keys=True) for v in values)
    return data


def differing_fields(before: BaseModel, after: BaseModel) -> list[str]:
    """Names of the fields whose content differs, in declaration order."""
    left = comparable_dump(before)
    right = comparable_dump(after)
    return [name for name in left if left[name] != right.get(name)]
