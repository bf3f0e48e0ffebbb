from dataclasses import dataclass
from inspect import Parameter, Signature
from typing import Annotated, Any, Callable, TypedDict, Unpack, get_args, get_origin

from ididi import USE_FACTORY_MARK, DependentNode
from ididi.utils.typing_utils import flatten_annotated
from msgspec import Meta, Struct, defstruct

from mmagent.errors import MMAgentConfigurationError, UnannotatedToolParamError
from mmagent.interface import MISSING, JsonSchema, Maybe, is_present

from .schema import inline_schema


class ParamConstraint(TypedDict, total=False):
    gt: int | float
    ge: int | float
    lt: int | float
    le: int | float
    multiple_of: int | float
    pattern: str
    min_length: int
    max_length: int


@dataclass(frozen=True, kw_only=True, slots=True)
class ParamInfo:
    description: str
    alias: Maybe[str] = MISSING
    required: Maybe[bool] = MISSING
    examples: list[Any]
    extra_json_schema: dict[str, Any]
    constraint: ParamConstraint


def param(
    description: str = "",
    *,
    alias: Maybe[str] = MISSING,
    required: Maybe[bool] = MISSING,
    examples: Maybe[list[Any]] = MISSING,
    extra_json_schema: Maybe[dict[str, Any]] = MISSING,
    **constraint: Unpack[ParamConstraint],
) -> ParamInfo:
    """Mark an `Annotated` parameter as model-visible.

    Args:
        description: Shown to the model in the tool schema.
        alias: Name of the parameter in the schema, defaults to the python name.
        required: Defaults to whether the parameter has no default value.
        constraint: msgspec `Meta` constraints, enforced when arguments decode.
    """
    return ParamInfo(
        description=description,
        alias=alias,
        required=required,
        examples=examples if is_present(examples) else [],
        extra_json_schema=extra_json_schema if is_present(extra_json_schema) else {},
        constraint=constraint,
    )


def _annotated_metas(p: Parameter) -> list[Any]:
    if get_origin(p.annotation) is not Annotated:
        return []
    return flatten_annotated(p.annotation)


def _param_info(metas: list[Any]) -> ParamInfo | None:
    for meta in metas:
        if isinstance(meta, ParamInfo):
            return meta
    return None


def _dependency(metas: list[Any], param_type: Any) -> DependentNode | None:
    if USE_FACTORY_MARK not in metas:
        return None
    factory = metas[metas.index(USE_FACTORY_MARK) + 1]
    return DependentNode.from_node(factory or param_type)


@dataclass(frozen=True, kw_only=True, slots=True)
class ToolParam:
    name: str
    alias: str
    required: bool
    annotation: Any
    default: Maybe[Any] = MISSING
    schema: JsonSchema

    @classmethod
    def from_parameter(cls, p: Parameter, info: ParamInfo) -> "ToolParam":
        default = MISSING if p.default is Parameter.empty else p.default
        param_type = get_args(p.annotation)[0]

        schema = inline_schema(param_type, default)
        if info.description:
            schema["description"] = info.description
        if info.examples:
            schema["examples"] = info.examples
        schema.update(info.extra_json_schema)  # type: ignore[typeddict-item]

        annotation = (
            Annotated[param_type, Meta(**info.constraint)]
            if info.constraint
            else param_type
        )
        return cls(
            name=p.name,
            alias=info.alias if is_present(info.alias) else p.name,
            required=info.required if is_present(info.required) else default is MISSING,
            annotation=annotation,
            default=default,
            schema=schema,
        )


@dataclass(kw_only=True, slots=True)
class ToolSignature:
    """Model-visible parameters and injected dependencies of a tool function."""

    params: dict[str, ToolParam]
    dep_nodes: dict[str, Callable[..., Any]]

    def generate_params_schema(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []
        for p in self.params.values():
            properties[p.alias] = p.schema
            if p.required:
                required.append(p.alias)

        schema: dict[str, Any] = {
            "type": "object",
            "properties": properties,
            "additionalProperties": False,
        }
        if required:
            schema["required"] = required
        return schema

    def arguments_struct(self) -> type[Struct]:
        """A struct type that decodes and validates the model's arguments JSON."""
        fields: list[tuple[Any, ...]] = []
        for p in self.params.values():
            if is_present(p.default):
                fields.append((p.alias, p.annotation, p.default))
            else:
                fields.append((p.alias, p.annotation))
        return defstruct("ToolArguments", fields, forbid_unknown_fields=False)

    def alias_to_name(self) -> dict[str, str]:
        return {p.alias: p.name for p in self.params.values()}

    @classmethod
    def from_signature(cls, func_sig: Signature) -> "ToolSignature":
        params: dict[str, ToolParam] = {}
        dep_nodes: dict[str, Callable[..., Any]] = {}
        for p in func_sig.parameters.values():
            if p.annotation is Parameter.empty:
                raise UnannotatedToolParamError(
                    f"Parameter {p.name!r} is missing type annotation"
                )
            metas = _annotated_metas(p)
            if not metas:
                continue

            if info := _param_info(metas):
                params[p.name] = ToolParam.from_parameter(p, info)

            if dep := _dependency(metas, get_args(p.annotation)[0]):
                if p.name in params:
                    raise MMAgentConfigurationError(
                        f"Parameter {p.name!r} is both a tool param and a dependency"
                    )
                dep_nodes[p.name] = dep.factory

        return cls(params=params, dep_nodes=dep_nodes)
