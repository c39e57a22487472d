"""
Row-count changing transformations: unpivot (fan-out) and filter (fan-in)
"""

from typing import Any, Callable, Iterable, Iterator, List, Sequence

from core.exceptions import ConfigurationError
from ingestion.transformers.base import Row, Transformation


class UnpivotTransformation(Transformation):
    """
    Split one wide measurement row into one long row per value column.

    Example:
        id_fields=["station", "year"], value_fields=["tmin", "tmax"]

        {"station": "A", "year": "2021", "tmin": 3, "tmax": 18}
        ->
        {"station": "A", "year": "2021", "measure": "tmin", "value": 3}
        {"station": "A", "year": "2021", "measure": "tmax", "value": 18}

    Columns whose value is None are skipped unless keep_missing is set.
    """

    name = "unpivot"

    def __init__(
        self,
        id_fields: Sequence[str],
        value_fields: Sequence[str],
        name_field: str = "measure",
        value_field: str = "value",
        keep_missing: bool = False
    ):
        if not value_fields:
            raise ConfigurationError("UnpivotTransformation needs at least one value field")
        self.id_fields = list(id_fields)
        self.value_fields = list(value_fields)
        self.name_field = name_field
        self.value_field = value_field
        self.keep_missing = keep_missing

    def apply(self, record: Row) -> Iterator[Row]:
        base = {field: record.get(field) for field in self.id_fields}
        for field in self.value_fields:
            value = record.get(field)
            if value is None and not self.keep_missing:
                continue
            yield {**base, self.name_field: field, self.value_field: value}


class FilterTransformation(Transformation):
    """Keep only records matching a predicate"""

    name = "filter"

    def __init__(self, predicate: Callable[[Row], Any]):
        self.predicate = predicate

    def apply(self, record: Row) -> Iterable[Row]:
        if self.predicate(record):
            return [record]
        return []
