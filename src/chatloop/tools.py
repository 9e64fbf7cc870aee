import functools
import inspect
import re
from typing import Any, Callable

from pydantic import BaseModel, Field

# Parameters the executor fills in itself; never shown to the model.
INJECTED_PARAMS = ("context",)

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
    type(None): "null",
}


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any = None


def _json_type(annotation) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    origin = getattr(annotation, "__origin__", None)
    if origin is not None:
        annotation = origin
    return _JSON_TYPES.get(annotation, "string")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Pull per-parameter descriptions out of a docstring.

    Understands Google (``Args:``), reST (``:param x:``) and NumPy
    (``Parameters`` + dashes) layouts.  Continuation lines are joined
    with newlines.
    """
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()

    rest = {}
    for line in lines:
        m = re.match(r"\s*:param\s+(?:\w+\s+)?(\w+):\s*(.*)", line)
        if m:
            rest[m.group(1)] = m.group(2).strip()
    if rest:
        return rest

    for i, line in enumerate(lines):
        if line.strip() == "Parameters" and i + 1 < len(lines) \
                and set(lines[i + 1].strip()) == {"-"}:
            return _parse_numpy_section(lines[i + 2:])
        if line.strip() in ("Args:", "Arguments:", "Parameters:"):
            return _parse_google_section(lines[i + 1:])
    return {}


def _parse_google_section(lines: list[str]) -> dict[str, str]:
    descs: dict[str, list[str]] = {}
    current = None
    base_indent = None
    for line in lines:
        if not line.strip():
            if current is not None:
                break
            continue
        indent = len(line) - len(line.lstrip())
        if base_indent is None:
            base_indent = indent
        if indent < base_indent:
            break
        m = re.match(r"(\w+)(?:\s*\([^)]*\))?:\s*(.*)", line.strip())
        if indent == base_indent and m:
            current = m.group(1)
            descs[current] = [m.group(2).strip()]
        elif current is not None:
            descs[current].append(line.strip())
    return {k: "\n".join(v) for k, v in descs.items()}


def _parse_numpy_section(lines: list[str]) -> dict[str, str]:
    descs: dict[str, list[str]] = {}
    current = None
    for i, line in enumerate(lines):
        if not line.strip():
            continue
        if not line.startswith((" ", "\t")):
            m = re.match(r"(\w+)\s*(?::.*)?$", line.strip())
            next_line = lines[i + 1].strip() if i + 1 < len(lines) else ""
            if not m or (next_line and set(next_line) == {"-"}):
                break
            current = m.group(1)
            descs[current] = []
        elif current is not None:
            descs[current].append(line.strip())
    return {k: "\n".join(v) for k, v in descs.items()}


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """Build the JSON-schema ``parameters`` object for *func*.

    Returns the schema and the list of required parameter names.
    """
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in inspect.signature(func).parameters.items():
        if name in INJECTED_PARAMS:
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


class Tool(BaseModel):
    """A local function the model may call.

    Create tools with the :func:`tool` decorator rather than directly.
    ``model_dump()`` returns the OpenAI-compatible function descriptor.
    """

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=dict)
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs):
        """Override to return the JSON schema instead of internal attributes"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def bind(self, **bound) -> "Tool":
        """Return a copy with *bound* arguments fixed and hidden from the model."""
        func = functools.partial(self.func, **bound)
        functools.update_wrapper(func, self.func)
        signature = inspect.signature(self.func)
        func.__signature__ = signature.replace(parameters=[
            p for name, p in signature.parameters.items() if name not in bound
        ])
        schema = {
            **self.parameters_schema,
            "properties": {
                k: v for k, v in self.parameters_schema["properties"].items()
                if k not in bound
            },
            "required": [
                r for r in self.parameters_schema["required"] if r not in bound
            ],
        }
        return Tool(
            func=func, name=self.name, description=self.description,
            parameters_schema=schema,
        )

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="search", description="...")``).  The description
    defaults to the first paragraph of the docstring and parameter
    descriptions are read from its ``Args`` section.
    """
    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        doc = inspect.getdoc(f) or ""
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None
            else doc.split("\n\n")[0].strip(),
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap


class ToolRegistry:
    """Name-indexed set of tools attached to a conversation.

    Raises:
        ValueError: If two tools share a name.
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, t: Tool) -> None:
        if t.name in self._tools:
            raise ValueError(f"Duplicate tool name: '{t.name}'")
        self._tools[t.name] = t

    def lookup(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict]:
        return [t.model_dump() for t in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
