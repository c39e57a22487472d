"""
Type coercion and schema validation transformations
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Type
from datetime import date, datetime
import logging

from pydantic import BaseModel, ValidationError

from core.exceptions import ConfigurationError, DataFormatError
from ingestion.transformers.base import Row, Transformation

logger = logging.getLogger(__name__)


class FieldNormalizer(Transformation):
    """
    Rename, coerce and derive columns of a raw record.

    Handles:
    - Column renames (source name -> target name)
    - Type conversion (int, float, str, bool, datetime, date)
    - Derived columns computed from the coerced row
    - Dropping columns that are not declared

    Values that cannot be converted become None, unless the column is
    listed in ``required``, in which case the record is rejected with
    DataFormatError.
    """

    name = "normalizer"

    def __init__(
        self,
        types: Dict[str, str],
        renames: Optional[Dict[str, str]] = None,
        derived: Optional[Dict[str, Callable[[Row], Any]]] = None,
        required: Iterable[str] = (),
        keep_unknown: bool = False
    ):
        unknown = {t for t in types.values() if t not in self.PARSERS}
        if unknown:
            raise ConfigurationError(
                f"Unsupported column types: {sorted(unknown)}",
                context={"supported": sorted(self.PARSERS)}
            )
        self.types = types
        self.renames = renames or {}
        self.derived = derived or {}
        self.required = set(required)
        self.keep_unknown = keep_unknown

    def apply(self, record: Row) -> Iterable[Row]:
        renamed = {self.renames.get(k, k): v for k, v in record.items()}
        row: Row = dict(renamed) if self.keep_unknown else {}

        for column, type_name in self.types.items():
            raw = renamed.get(column)
            value = self.PARSERS[type_name](raw)
            if value is None and column in self.required:
                raise DataFormatError(
                    f"Column '{column}' is missing or not a valid {type_name}",
                    context={"column": column, "value": raw}
                )
            row[column] = value

        for column, compute in self.derived.items():
            row[column] = compute(row)

        return [row]

    @staticmethod
    def _parse_float(value: Any) -> Optional[float]:
        """Safely parse float value"""
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _parse_int(value: Any) -> Optional[int]:
        """Safely parse int value"""
        if value is None or value == "":
            return None
        try:
            return int(float(value))  # Handle "10.0" strings
        except (ValueError, TypeError, OverflowError):
            return None

    @staticmethod
    def _parse_str(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @staticmethod
    def _parse_bool(value: Any) -> Optional[bool]:
        if isinstance(value, bool):
            return value
        if value is None:
            return None
        text = str(value).strip().lower()
        if text in ("true", "t", "yes", "y", "1"):
            return True
        if text in ("false", "f", "no", "n", "0"):
            return False
        return None

    @staticmethod
    def _parse_datetime(value: Any) -> Optional[str]:
        """Safely parse datetime value, returned in ISO-8601"""
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.isoformat()
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00")).isoformat()
        except ValueError:
            return None

    @staticmethod
    def _parse_date(value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        try:
            return date.fromisoformat(str(value)[:10]).isoformat()
        except ValueError:
            return None

    PARSERS: Dict[str, Callable[[Any], Any]] = {
        "float": _parse_float.__func__,
        "int": _parse_int.__func__,
        "str": _parse_str.__func__,
        "bool": _parse_bool.__func__,
        "datetime": _parse_datetime.__func__,
        "date": _parse_date.__func__,
    }


class SchemaTransformation(Transformation):
    """
    Validate and coerce records with a Pydantic model.

    A record that fails validation is malformed data: the load attempt
    fails with a non-retryable DataFormatError.
    """

    def __init__(self, model: Type[BaseModel], exclude_none: bool = False):
        self.model = model
        self.exclude_none = exclude_none
        self.name = f"schema:{model.__name__}"

    def apply(self, record: Row) -> Iterable[Row]:
        try:
            validated = self.model.model_validate(record)
        except ValidationError as e:
            errors: List[str] = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise DataFormatError(
                f"Record does not match {self.model.__name__}",
                context={"model": self.model.__name__, "errors": errors},
                original_exception=e
            )
        return [validated.model_dump(mode="json", exclude_none=self.exclude_none)]
