import functools
import inspect
import json
import re
from typing import Any, Callable

from pydantic import BaseModel, Field

# Parameters the runner injects; never shown to the model.
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


class LLMRecoverableError(Exception):
    """Raised by a tool to hand a message back to the model.

    The runner records the message as a normal tool result (not an error)
    so the model can correct itself on the next turn.
    """


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any = None


def _json_type(annotation) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(origin or annotation, "string")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from a docstring.

    Understands Google (``Args:``), reST (``:param x:``) and NumPy
    (``Parameters`` + dashes) styles.
    """
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()

    rest = {
        m.group(1): m.group(2).strip()
        for m in re.finditer(r"^:param\s+(?:\w+\s+)?(\w+):\s*(.*)$", doc, re.M)
    }
    if rest:
        return rest

    descriptions: dict[str, list[str]] = {}
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped in ("Args:", "Arguments:", "Parameters:"):
            descriptions = _parse_google_section(lines[i + 1:])
            break
        if (
            stripped == "Parameters"
            and i + 1 < len(lines)
            and set(lines[i + 1].strip()) == {"-"}
        ):
            descriptions = _parse_numpy_section(lines[i + 2:])
            break
    return {name: "\n".join(text).strip() for name, text in descriptions.items()}


def _parse_google_section(lines: list[str]) -> dict[str, list[str]]:
    descriptions: dict[str, list[str]] = {}
    current = None
    base_indent = None
    for line in lines:
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip())
        if base_indent is None:
            base_indent = indent
        if indent < base_indent:
            break
        match = re.match(r"^(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$", line.strip())
        if indent == base_indent and match:
            current = match.group(1)
            descriptions[current] = [match.group(2)]
        elif indent == base_indent:
            break
        elif current is not None:
            descriptions[current].append(line.strip())
    return descriptions


def _parse_numpy_section(lines: list[str]) -> dict[str, list[str]]:
    descriptions: dict[str, list[str]] = {}
    current = None
    for i, line in enumerate(lines):
        if not line.strip():
            continue
        if i + 1 < len(lines) and set(lines[i + 1].strip()) == {"-"}:
            break
        if not line.startswith((" ", "\t")):
            match = re.match(r"^(\w+)\s*(?::.*)?$", line)
            if not match:
                break
            current = match.group(1)
            descriptions[current] = []
        elif current is not None:
            descriptions[current].append(line.strip())
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in inspect.signature(func).parameters.items():
        if name in INJECTED_PARAMS:
            continue
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    return {"type": "object", "properties": properties, "required": required}, required


class Tool(BaseModel):
    """A callable the model may request, plus its JSON schema.

    Sync and async functions are both supported; ``await tool(**kwargs)``
    always returns a :class:`ToolCallResult`.
    """

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict
    model_config = {"arbitrary_types_allowed": True}

    @classmethod
    def from_function(
        cls, func: Callable, name: str | None = None,
        description: str | None = None,
    ) -> "Tool":
        schema, _ = _build_parameters_schema(func)
        doc = inspect.getdoc(func) or ""
        return cls(
            func=func,
            name=name or func.__name__,
            description=description if description is not None else doc.split("\n\n")[0],
            parameters_schema=schema,
        )

    @property
    def accepts_context(self) -> bool:
        return "context" in inspect.signature(self.func).parameters

    def model_dump(self, **kwargs) -> dict:
        """Return the OpenAI function-calling declaration."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def model_dump_json(self, **kwargs) -> str:
        return json.dumps(self.model_dump())

    def bind(self, **bound: Any) -> "Tool":
        """Pre-fill arguments and hide them from the model."""
        func = functools.partial(self.func, **bound)
        properties = {
            k: v for k, v in self.parameters_schema["properties"].items()
            if k not in bound
        }
        required = [r for r in self.parameters_schema["required"] if r not in bound]
        return Tool(
            func=func,
            name=self.name,
            description=self.description,
            parameters_schema={
                "type": "object", "properties": properties, "required": required,
            },
        )

    async def __call__(self, *args, **kwargs) -> ToolCallResult:
        output = self.func(*args, **kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="calc", description="...")``).
    """
    if func is not None:
        return Tool.from_function(func)

    def decorator(f: Callable) -> Tool:
        return Tool.from_function(f, name=name, description=description)

    return decorator
