from copy import deepcopy
from types import GenericAlias, UnionType
from typing import Any, Callable, cast

from msgspec.json import schema_components

from mmagent.interface import MISSING, JsonSchema, Maybe, is_json_compatible, is_present

SchemaHook = Callable[[type], dict[str, Any] | None] | None
RegularTypes = type | UnionType | GenericAlias

MSGSPEC_REF_PREFIX = "#/components/schemas/"
MSGSPEC_REF_TEMPLATE = MSGSPEC_REF_PREFIX + "{name}"


def _default_schema_hook(t: type) -> dict[str, Any] | None:
    if t is object:
        return {"type": "object"}
    return None


def json_schema(
    type_: RegularTypes,
    schema_hook: SchemaHook = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    def _combined_hook(t: type) -> dict[str, Any] | None:
        if schema_hook is not None:
            custom_schema = schema_hook(t)
            if custom_schema is not None:
                return custom_schema
        return _default_schema_hook(t)

    (schema,), defs = schema_components(
        (type_,),
        schema_hook=_combined_hook,  # type: ignore
        ref_template=MSGSPEC_REF_TEMPLATE,
    )
    return schema, defs


def _expand(node: Any, defs: dict[str, Any]) -> None:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith(MSGSPEC_REF_PREFIX):
            extras = {k: v for k, v in node.items() if k != "$ref"}
            node.clear()
            node.update(deepcopy(defs.get(ref[len(MSGSPEC_REF_PREFIX) :], {})))
            node.update(extras)
            _expand(node, defs)
            return
        for value in node.values():
            _expand(value, defs)
    elif isinstance(node, list):
        for item in node:
            _expand(item, defs)


def inline_schema(type_: RegularTypes, default: Maybe[Any] = MISSING) -> JsonSchema:
    """JSON schema of `type_` with every `$ref` expanded in place.

    Tool parameter schemas are sent to providers that do not resolve
    references, so nested structs are inlined:

        class Point(Struct):
            x: int
            y: int

        inline_schema(list[Point])
        # {"type": "array", "items": {"type": "object", "properties": {...}, ...}}
    """
    schema, defs = json_schema(type_)
    if defs:
        _expand(schema, defs)
    if is_present(default) and is_json_compatible(default):
        schema.setdefault("default", default)
    return cast(JsonSchema, schema)
