"""
Transformation strategy objects injected into the load executor.

A transformation maps one raw record to zero, one or many output rows.
Returning an empty sequence filters the record out (fan-in); returning
several rows fans it out. Output sequences must be finite and must not
depend on state left over from a previous attempt, so a retried load
produces the same rows.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
import importlib
import logging

from core.exceptions import ConfigurationError, DataFormatError, ETLException, TransformationError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
TransformResult = Union[Row, Iterable[Row], None]


class Transformation(ABC):
    """Abstract raw record -> transformed rows mapping"""

    name: str = "transformation"

    @abstractmethod
    def apply(self, record: Row) -> Iterable[Row]:
        """Transform one raw record"""
        pass

    def __call__(self, record: Row) -> List[Row]:
        """
        Apply the transformation and normalize its result to a list.

        Unexpected exceptions are wrapped in TransformationError so the
        executor can classify the failed attempt.
        """
        try:
            return _as_rows(self.apply(record), self.name)
        except ETLException:
            raise
        except Exception as e:
            raise TransformationError(
                f"Transformation '{self.name}' failed",
                context={"transformation": self.name},
                original_exception=e
            )


def _as_rows(result: TransformResult, name: str) -> List[Row]:
    if result is None:
        return []
    if isinstance(result, dict):
        return [result]

    rows = list(result)
    for row in rows:
        if not isinstance(row, dict):
            raise DataFormatError(
                f"Transformation '{name}' produced a non-mapping row",
                context={"transformation": name, "row_type": type(row).__name__}
            )
    return rows


class IdentityTransformation(Transformation):
    """Pass raw records through unchanged"""

    name = "identity"

    def apply(self, record: Row) -> Iterable[Row]:
        return [dict(record)]


class FunctionTransformation(Transformation):
    """
    Wrap a plain callable.

    The callable may return a dict, an iterable of dicts (including a
    generator), or None to drop the record.
    """

    def __init__(self, func: Callable[[Row], TransformResult], name: Optional[str] = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "function")

    def apply(self, record: Row) -> Iterable[Row]:
        return _as_rows(self.func(record), self.name)


class ChainedTransformation(Transformation):
    """Feed every output row of one step into the next"""

    def __init__(self, *steps: Transformation):
        if not steps:
            raise ConfigurationError("ChainedTransformation needs at least one step")
        self.steps = steps
        self.name = " | ".join(step.name for step in steps)

    def apply(self, record: Row) -> Iterable[Row]:
        rows = [record]
        for step in self.steps:
            rows = [out for row in rows for out in step(row)]
            if not rows:
                break
        return rows


def load_transformation(path: Optional[str]) -> Transformation:
    """
    Resolve a transformation from a dotted path ``package.module:attribute``.

    The attribute may be a Transformation instance, a Transformation
    subclass (instantiated without arguments) or a plain callable. An empty
    path yields the identity transformation.

    Raises:
        ConfigurationError: If the path cannot be imported or resolved
    """
    if not path:
        return IdentityTransformation()

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(
            f"Invalid transformation path '{path}': expected 'package.module:attribute'",
            context={"transformation": path}
        )

    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(
            f"Cannot load transformation '{path}'",
            context={"transformation": path},
            original_exception=e
        )

    if isinstance(target, Transformation):
        return target
    if isinstance(target, type) and issubclass(target, Transformation):
        return target()
    if callable(target):
        return FunctionTransformation(target, name=attribute)

    raise ConfigurationError(
        f"Transformation '{path}' is not callable",
        context={"transformation": path}
    )
