"""Fetch request values: predicates, sort descriptors, and their SQL rendering."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datahero.domain.model import EntityDescription

SQLValue = str | int | float | bytes | None


@dataclass(frozen=True, slots=True)
class Predicate:
    """A SQL ``WHERE`` fragment with positional parameters.

    The fragment is handed to sqlite verbatim; it is never parsed here.
    """

    sql: str
    params: tuple[SQLValue, ...] = ()

    @classmethod
    def where(cls, sql: str, *params: SQLValue) -> Predicate:
        return cls(sql=sql, params=tuple(params))

    def __and__(self, other: Predicate) -> Predicate:
        return Predicate(f"({self.sql}) AND ({other.sql})", self.params + other.params)

    def __or__(self, other: Predicate) -> Predicate:
        return Predicate(f"({self.sql}) OR ({other.sql})", self.params + other.params)


PredicateLike = Predicate | str


@dataclass(frozen=True, slots=True)
class SortDescriptor:
    key: str
    ascending: bool = True


@dataclass(frozen=True, slots=True)
class FetchRequest:
    entity: EntityDescription
    predicate: Predicate | None = None
    sort_descriptors: tuple[SortDescriptor, ...] = field(default=())
    limit: int | None = None
    batch_size: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit <= 0:
            raise ValueError("limit must be > 0")
        if self.batch_size is not None and self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        for descriptor in self.sort_descriptors:
            if descriptor.key not in self.entity.attributes:
                raise ValueError(
                    f"unknown sort key {descriptor.key!r} for entity {self.entity.name}"
                )

    def where_clause(self) -> tuple[str, tuple[SQLValue, ...]]:
        if self.predicate is None:
            return "", ()
        return f" WHERE {self.predicate.sql}", self.predicate.params

    def count_sql(self) -> tuple[str, tuple[SQLValue, ...]]:
        where, params = self.where_clause()
        return f"SELECT COUNT(*) FROM {quote_identifier(self.entity.name)}{where}", params

    def select_sql(self) -> tuple[str, tuple[SQLValue, ...]]:
        where, params = self.where_clause()
        sql = f"SELECT * FROM {quote_identifier(self.entity.name)}{where}"
        if self.sort_descriptors:
            rendered = ", ".join(
                f"{quote_identifier(item.key)} {'ASC' if item.ascending else 'DESC'}"
                for item in self.sort_descriptors
            )
            sql += f" ORDER BY {rendered}"
        if self.limit is not None:
            sql += " LIMIT ?"
            params = (*params, self.limit)
        return sql, params


def as_predicate(value: PredicateLike | None) -> Predicate | None:
    if value is None or isinstance(value, Predicate):
        return value
    if isinstance(value, str):
        return Predicate(value)
    raise TypeError(f"predicate must be a Predicate or str, got {type(value).__name__}")


def make_fetch_request(
    entity: EntityDescription,
    predicate: PredicateLike | None = None,
    *,
    sort_descriptors: Sequence[SortDescriptor] | None = None,
    limit: int | None = None,
    batch_size: int | None = None,
) -> FetchRequest:
    return FetchRequest(
        entity=entity,
        predicate=as_predicate(predicate),
        sort_descriptors=tuple(sort_descriptors or ()),
        limit=limit,
        batch_size=batch_size,
    )


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


__all__ = [
    "FetchRequest",
    "Predicate",
    "PredicateLike",
    "SQLValue",
    "SortDescriptor",
    "as_predicate",
    "make_fetch_request",
    "quote_identifier",
]
