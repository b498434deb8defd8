from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal


FilterOp = Literal["eq", "ilike"]


@dataclass(frozen=True)
class Filter:
    field: str
    value: object
    op: FilterOp = "eq"

    def to_param(self) -> tuple[str, str]:
        """PostgREST query parameter, e.g. ("video_id", "eq.42")."""
        if self.op == "ilike":
            return self.field, f"ilike.*{self.value}*"
        return self.field, f"eq.{self.value}"

    def matches(self, row: dict[str, Any]) -> bool:
        if self.field not in row:
            # Rows without the column (e.g. delete payloads) cannot be filtered out.
            return True
        actual = row.get(self.field)
        if self.op == "ilike":
            return str(self.value).lower() in str(actual or "").lower()
        return str(actual) == str(self.value)


@dataclass(frozen=True)
class Order:
    field: str = "created_at"
    descending: bool = True

    def to_param(self) -> str:
        return f"{self.field}.{'desc' if self.descending else 'asc'}"


def eq(field: str, value: object) -> Filter:
    return Filter(field=field, value=value, op="eq")


def ilike(field: str, term: str) -> Filter:
    return Filter(field=field, value=term, op="ilike")


NEWEST_FIRST = Order(field="created_at", descending=True)
