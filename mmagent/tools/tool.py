from inspect import iscoroutinefunction, signature
from typing import Any, Callable, TypedDict, Unpack, overload

from msgspec import DecodeError, Struct, ValidationError, field
from msgspec.json import Decoder, decode
from msgspec.json import encode as msg_encode
from msgspec.structs import asdict as msg_asdict

from mmagent.errors import ToolArgumentsError
from mmagent.interface import MISSING, Maybe, is_present
from mmagent.llm.models import ContentPart, ImagePart, MessageContent, TextPart

from .params import ToolSignature


class IToolMeta(TypedDict, total=False):
    description: str
    """Human-readable description of the tool, defaults to the docstring."""
    name: str
    """Name exposed to the model, defaults to the function name."""
    max_calls_per_run: int
    """Maximum number of times this tool may be executed during a single run."""
    tags: list[str]


class ToolMeta(Struct, kw_only=True):
    "Every meta field should be optional."

    description: str = ""
    name: str = ""
    max_calls_per_run: int | None = None
    tags: list[str] = field(default_factory=list[str])


def _is_content_parts(value: Any) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(v, (TextPart, ImagePart)) for v in value)
    )


class Tool[**P, R]:
    """A callable the model may invoke, with its schema and argument decoder."""

    def __init__(
        self,
        name: str,
        func: Callable[..., Any],
        parameters: dict[str, Any],
        metadata: ToolMeta,
        signature: ToolSignature | None = None,
    ):
        self.name = name
        self.func = func
        self.parameters = parameters
        self.signature = signature
        self._meta = metadata
        self._is_async = iscoroutinefunction(func)
        self._decoder = (
            Decoder(type=signature.arguments_struct(), strict=False)
            if signature is not None
            else None
        )

    def __repr__(self) -> str:
        return f"Tool({self.name!r})"

    @property
    def metadata(self) -> ToolMeta:
        return self._meta

    @property
    def description(self) -> str:
        return self._meta.description

    @property
    def is_async(self) -> bool:
        return self._is_async

    @property
    def dep_nodes(self) -> dict[str, Callable[..., Any]]:
        return self.signature.dep_nodes if self.signature else {}

    @property
    def definition(self) -> dict[str, Any]:
        """Provider-neutral `{name, description, parameters}` description."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def decode_arguments(self, data: str) -> dict[str, Any]:
        """Decode the model's raw JSON arguments into keyword arguments.

        An empty payload is treated as `{}`, models commonly send that for
        parameterless tools.
        """
        raw = data.strip() or "{}"
        try:
            if self._decoder is None or self.signature is None:
                payload = decode(raw)
                if not isinstance(payload, dict):
                    raise ToolArgumentsError(
                        f"Arguments for {self.name!r} must be a JSON object"
                    )
                return payload
            decoded = self._decoder.decode(raw)
        except (DecodeError, ValidationError) as err:
            raise ToolArgumentsError(
                f"Invalid arguments for {self.name!r}: {err}"
            ) from err
        names = self.signature.alias_to_name()
        return {names[k]: v for k, v in msg_asdict(decoded).items()}

    def encode_result(self, value: Any) -> MessageContent:
        """Text or content parts handed back to the model as the tool result."""
        if isinstance(value, str):
            return value
        if isinstance(value, (TextPart, ImagePart)):
            return [value]
        if _is_content_parts(value):
            parts: list[ContentPart] = value
            return parts
        return msg_encode(value).decode("utf-8")

    def __call__(self, *args: P.args, **kwds: P.kwargs) -> R:
        return self.func(*args, **kwds)

    @classmethod
    def from_func(
        cls, func: Callable[P, R], meta: Maybe[ToolMeta] = MISSING
    ) -> "Tool[P, R]":
        """Build a tool from a function whose parameters use `Annotated[T, param(...)]`."""
        tool_signature = ToolSignature.from_signature(signature(func))
        if not is_present(meta):
            meta = ToolMeta()
        if not meta.description:
            meta.description = (func.__doc__ or "").strip()
        return cls(
            name=meta.name or func.__name__,
            func=func,
            parameters=tool_signature.generate_params_schema(),
            metadata=meta,
            signature=tool_signature,
        )

    @classmethod
    def from_schema(
        cls,
        name: str,
        description: str,
        parameters: dict[str, Any],
        func: Callable[..., Any],
    ) -> "Tool[..., Any]":
        """Wrap a callable described by a raw JSON schema, called with the decoded object as kwargs."""
        return cls(
            name=name,
            func=func,
            parameters=parameters,
            metadata=ToolMeta(description=description, name=name),
        )


@overload
def tool[**P, R](func: Callable[P, R]) -> Tool[P, R]: ...


@overload
def tool[**P, R](
    **tool_meta: Unpack[IToolMeta],
) -> Callable[[Callable[P, R]], Tool[P, R]]: ...


def tool[**P, R](
    func: Maybe[Callable[P, R]] = MISSING,
    **tool_meta: Unpack[IToolMeta],
) -> Tool[P, R] | Callable[[Callable[P, R]], Tool[P, R]]:
    if is_present(func):
        return Tool[P, R].from_func(func)

    def wrapper(f: Callable[P, R]) -> Tool[P, R]:
        return Tool[P, R].from_func(f, meta=ToolMeta(**tool_meta))

    return wrapper
