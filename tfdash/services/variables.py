"""Variable bindings for a deployment and their HCL literal rendering.

A variable value is a tagged union: string, number, bool, list of values or
map of string keys to values. ``null`` is not a value; an absent binding is
expressed by leaving the variable out.
"""
from __future__ import annotations

import math
import re
from typing import Any, Iterable, Union

from jsonschema import ValidationError
from jsonschema import validate as jsonschema_validate

from tfdash.services.errors import IntegrityException, PreconditionException

VariableValue = Union[str, int, float, bool, list[Any], dict[str, Any]]

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
# Bare keys that HCL would read as literals.
_KEYWORD_KEYS = frozenset({"null", "true", "false"})
_INT_RE = re.compile(r"^[+-]?[0-9]+$")
_FLOAT_RE = re.compile(r"^[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?$")
_COLLECTION_TYPE_RE = re.compile(r"^(list|set|map)\((.+)\)$", re.DOTALL)
_STRUCTURAL_TYPE_RE = re.compile(r"^(object|tuple)\(.*\)$", re.DOTALL)

ENVIRONMENT_VARIABLE = "environment"

_STRING_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def type_to_jsonschema(type_expr: str) -> dict[str, Any]:
    """Translate a Terraform type constraint into a JSON schema fragment."""
    expr = re.sub(r"\s+", "", type_expr or "any")
    if expr == "any":
        return {}
    if expr == "string":
        return {"type": "string"}
    if expr == "number":
        return {"type": "number"}
    if expr == "bool":
        return {"type": "boolean"}
    if expr in ("list", "set"):
        return {"type": "array"}
    if expr == "map":
        return {"type": "object"}
    if match := _COLLECTION_TYPE_RE.fullmatch(expr):
        kind, inner = match.group(1), type_to_jsonschema(match.group(2))
        if kind == "map":
            return {"type": "object", "additionalProperties": inner}
        schema: dict[str, Any] = {"type": "array", "items": inner}
        if kind == "set":
            schema["uniqueItems"] = True
        return schema
    if match := _STRUCTURAL_TYPE_RE.fullmatch(expr):
        return {"type": "object" if match.group(1) == "object" else "array"}
    raise ValueError(f"Unsupported variable type {type_expr!r}")


def _base_type(type_expr: str | None) -> str:
    return re.sub(r"\s+", "", type_expr or "any")


def _coerce(value: Any, type_expr: str | None) -> Any:
    """Coerce form-style strings into numbers or booleans where declared."""
    if not isinstance(value, str):
        return value
    base = _base_type(type_expr)
    raw = value.strip()
    if base == "number":
        if _INT_RE.fullmatch(raw):
            return int(raw)
        if not _FLOAT_RE.fullmatch(raw):
            return value
        number = float(raw)
        return number if math.isfinite(number) else value
    if base == "bool" and raw.lower() in ("true", "false"):
        return raw.lower() == "true"
    return value


def check_value(value: Any, *, path: str) -> None:
    """Reject anything outside the variable value union."""
    if isinstance(value, bool) or isinstance(value, str) or isinstance(value, int):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise PreconditionException(f"Variable '{path}' must be a finite number")
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            check_value(item, path=f"{path}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise PreconditionException(f"Variable '{path}' has a non-string map key")
            check_value(item, path=f"{path}.{key}")
        return
    if value is None:
        raise PreconditionException(f"Variable '{path}' must not be null")
    raise PreconditionException(f"Variable '{path}' has unsupported type {type(value).__name__}")


def _validate_against_spec(spec: dict[str, Any], value: Any) -> None:
    schema = dict(type_to_jsonschema(spec.get("type") or "any"))
    if spec.get("allowed_values"):
        schema["enum"] = list(spec["allowed_values"])
    jsonschema_validate(instance=value, schema=schema)


def validate_variable_schema(specs: list[dict[str, Any]]) -> None:
    """Check a template's variable declarations before they are stored."""
    seen: set[str] = set()
    for spec in specs:
        name = spec.get("name") or ""
        if not IDENTIFIER_RE.fullmatch(name):
            raise IntegrityException(f"Variable name {name!r} is not a valid identifier")
        if name in seen:
            raise IntegrityException(f"Variable '{name}' is declared more than once")
        seen.add(name)
        try:
            type_to_jsonschema(spec.get("type") or "any")
        except ValueError as exc:
            raise IntegrityException(f"Variable '{name}': {exc}") from exc
        default = spec.get("default")
        if default is None:
            continue
        try:
            check_value(default, path=name)
            _validate_against_spec(spec, default)
        except PreconditionException as exc:
            raise IntegrityException(str(exc)) from exc
        except ValidationError as exc:
            raise IntegrityException(f"Default for variable '{name}' is invalid: {exc.message}") from exc


def resolve_bindings(
    specs: list[dict[str, Any]],
    supplied: dict[str, Any],
    *,
    environment: str,
) -> dict[str, Any]:
    """Return validated bindings in declaration order.

    Precedence is caller value, then the declared default, then (for a
    variable named ``environment``) the deployment's environment. Optional
    variables with nothing to bind are left out so the tool's own default
    applies.
    """
    declared = {spec["name"]: spec for spec in specs}
    unknown = sorted(set(supplied) - set(declared))
    if unknown:
        raise PreconditionException(f"Unknown variables: {', '.join(unknown)}")

    bindings: dict[str, Any] = {}
    for name, spec in declared.items():
        if name in supplied:
            value = _coerce(supplied[name], spec.get("type"))
        elif spec.get("default") is not None:
            value = spec["default"]
        elif name == ENVIRONMENT_VARIABLE:
            value = environment
        elif spec.get("required"):
            raise PreconditionException(f"Missing required variable '{name}'")
        else:
            continue
        check_value(value, path=name)
        try:
            _validate_against_spec(spec, value)
        except ValidationError as exc:
            raise PreconditionException(f"Variable '{name}' is invalid: {exc.message}") from exc
        bindings[name] = value
    return bindings


def quote_string(text: str) -> str:
    out = []
    for ch in text:
        if ch in _STRING_ESCAPES:
            out.append(_STRING_ESCAPES[ch])
        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    # Template sequences must stay literal.
    body = "".join(out).replace("${", "$${").replace("%{", "%%{")
    return f'"{body}"'


def _render_key(key: str) -> str:
    if IDENTIFIER_RE.fullmatch(key) and key not in _KEYWORD_KEYS:
        return key
    return quote_string(key)


def _is_scalar(value: Any) -> bool:
    return not isinstance(value, (list, dict))


def to_hcl(value: VariableValue, *, indent: int = 0) -> str:
    """Render one value as an HCL literal expression."""
    # bool first: it is a subclass of int
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("Non-finite numbers have no HCL literal form")
        return repr(value)
    if isinstance(value, str):
        return quote_string(value)

    pad = "  " * indent
    inner = "  " * (indent + 1)
    if isinstance(value, list):
        if not value:
            return "[]"
        if all(_is_scalar(item) for item in value):
            return "[" + ", ".join(to_hcl(item) for item in value) + "]"
        lines = [f"{inner}{to_hcl(item, indent=indent + 1)}," for item in value]
        return "[\n" + "\n".join(lines) + f"\n{pad}]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        lines = [
            f"{inner}{_render_key(key)} = {to_hcl(value[key], indent=indent + 1)}"
            for key in sorted(value)
        ]
        return "{\n" + "\n".join(lines) + f"\n{pad}}}"
    raise ValueError(f"Unsupported value type {type(value).__name__}")


def render_tfvars(bindings: dict[str, Any]) -> str:
    return "".join(f"{name} = {to_hcl(value)}\n" for name, value in bindings.items())


def declared_in_code(code: str, name: str) -> bool:
    pattern = rf'variable\s+"?{re.escape(name)}"?\s*\{{'
    return re.search(pattern, code) is not None


def render_variable_declarations(specs: Iterable[dict[str, Any]], code: str) -> str:
    """Declare the schema variables the template code leaves undeclared."""
    blocks = []
    for spec in specs:
        if declared_in_code(code, spec["name"]):
            continue
        lines = [f'variable "{spec["name"]}" {{']
        if spec.get("description"):
            lines.append(f"  description = {quote_string(spec['description'])}")
        type_expr = _base_type(spec.get("type"))
        if type_expr != "any":
            lines.append(f"  type        = {type_expr}")
        lines.append("}")
        blocks.append("\n".join(lines) + "\n")
    return "\n".join(blocks)
