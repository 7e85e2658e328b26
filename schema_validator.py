"""
Validates model-supplied action parameters against an ActionParamSchema.

`validate_params` walks the schema and the supplied value together and
returns a normalized copy: optional properties that were left out receive a
deep copy of their declared default, and properties the schema does not
declare are dropped. The first violation found is raised as a
ValidationError whose `path` points at the offending value, e.g.
`options.recursive` or `paths[2]`.
"""
import copy
from typing import Any, Optional

from data_models import ActionParamSchema, ParamKind
from tracer import trace

_PY_TYPE_NAMES = {
    bool: "boolean",
    int: "integer",
    float: "number",
    str: "string",
    dict: "object",
    list: "array",
    tuple: "array",
    type(None): "null",
}


class ValidationError(Exception):
    """Base class for parameter validation failures."""

    def __init__(self, path: str, message: str):
        super().__init__(message)
        self.path = path
        self.message = message


class MissingRequiredField(ValidationError):
    def __init__(self, path: str):
        super().__init__(path, f"Missing required parameter '{path}'.")


class TypeMismatch(ValidationError):
    def __init__(self, path: str, expected: ParamKind, actual: str):
        where = path or "params"
        super().__init__(path, f"Parameter '{where}' must be {expected.value}, got {actual}.")
        self.expected = expected
        self.actual = actual


def _describe(value: Any) -> str:
    return _PY_TYPE_NAMES.get(type(value), type(value).__name__)


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def _matches(kind: ParamKind, value: Any) -> bool:
    # bool is a subclass of int, so it has to be ruled out explicitly.
    if kind == ParamKind.STRING:
        return isinstance(value, str)
    if kind == ParamKind.BOOLEAN:
        return isinstance(value, bool)
    if kind == ParamKind.INTEGER:
        if isinstance(value, bool):
            return False
        return isinstance(value, int) or (isinstance(value, float) and value.is_integer())
    if kind == ParamKind.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == ParamKind.OBJECT:
        return isinstance(value, dict)
    if kind == ParamKind.ARRAY:
        return isinstance(value, (list, tuple))
    return False


def _validate_node(schema: ActionParamSchema, value: Any, path: str) -> Any:
    if not _matches(schema.kind, value):
        raise TypeMismatch(path, schema.kind, _describe(value))

    if schema.kind == ParamKind.INTEGER:
        return int(value)
    if schema.kind == ParamKind.OBJECT:
        return _validate_object(schema, value, path)
    if schema.kind == ParamKind.ARRAY:
        if schema.items is None:
            return list(value)
        return [_validate_node(schema.items, item, f"{path}[{index}]") for index, item in enumerate(value)]
    return value


def _validate_object(schema: ActionParamSchema, value: dict, path: str) -> dict:
    normalized = {}
    for name, prop in (schema.properties or {}).items():
        prop_path = _join(path, name)
        # An explicit null is treated the same as leaving the property out.
        present = value.get(name) is not None
        if not present:
            if prop.required:
                raise MissingRequiredField(prop_path)
            if prop.has_default:
                normalized[name] = copy.deepcopy(prop.default)
            continue
        normalized[name] = _validate_node(prop, value[name], prop_path)
    return normalized


@trace
def validate_params(schema: Optional[ActionParamSchema], params: Optional[dict]) -> dict:
    """
    Validates and normalizes action parameters.

    Args:
        schema: The action's parameter schema. None accepts anything.
        params: The parameters proposed by the model; None is read as {}.

    Returns:
        The normalized parameters with defaults applied and undeclared
        properties removed.

    Raises:
        MissingRequiredField: A required property is absent.
        TypeMismatch: A value has the wrong kind.
    """
    if params is None:
        params = {}
    if schema is None:
        return dict(params) if isinstance(params, dict) else {}
    return _validate_node(schema, params, "")
