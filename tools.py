"""
tools.py — Tool Registry & Validator

One declaration table drives three things that must never drift apart:
  - the function specs handed to the language model
  - the tool list the execution server advertises over stdio
  - argument validation before anything is dispatched

A name outside ToolName is a hard failure (UnknownTool). Arguments are
checked against the declared JSON schema subset (object / string / number /
integer / boolean / enum / required / additionalProperties).
"""

from typing import Any, Dict, List, Optional, Tuple

from errors import InvalidArguments, UnknownTool
from models import Platform, ProductStatus, SnapshotFormat, ToolName


# Where a tool's handler lives
RUNS_IN_SERVER = "server"
RUNS_IN_AGENT = "agent"

DATA_OPERATIONS = ("sync", "read", "export")
ANALYSIS_TYPES = ("count", "value", "low_stock", "summary")
DEFAULT_LOW_STOCK_THRESHOLD = 5


def default_declarations() -> Dict[ToolName, Dict[str, Any]]:
    """The coarse tool taxonomy: data operations, analytics, semantic search."""
    return {
        ToolName.DATA_OPERATIONS: {
            "runs_in": RUNS_IN_SERVER,
            "description": (
                "Handle data operations: sync inventory from the commerce platform "
                "(reuses a snapshot younger than the freshness window unless force=true), "
                "read an inventory file summary, or export the active snapshot to csv/json/md."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "operation": {
                        "type": "string",
                        "enum": list(DATA_OPERATIONS),
                        "description": "Type of data operation to perform",
                    },
                    "format": {
                        "type": "string",
                        "enum": [f.value for f in SnapshotFormat],
                        "description": "Format for export operations (optional)",
                    },
                    "file_path": {
                        "type": "string",
                        "description": "File path for read operations (optional)",
                    },
                    "force": {
                        "type": "boolean",
                        "description": "Sync only: ignore the cached snapshot and refetch",
                    },
                },
                "required": ["operation"],
                "additionalProperties": False,
            },
        },
        ToolName.ANALYTICS: {
            "runs_in": RUNS_IN_SERVER,
            "description": (
                "Exact analytics over the active inventory snapshot: count products, "
                "calculate total value, list low stock items, or get a summary."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "analysis_type": {
                        "type": "string",
                        "enum": list(ANALYSIS_TYPES),
                        "description": "Type of analysis to perform",
                    },
                    "filters": {
                        "type": "object",
                        "properties": {
                            "status": {
                                "type": "string",
                                "enum": [s.value for s in ProductStatus],
                                "description": "Filter by product status",
                            },
                            "platform": {
                                "type": "string",
                                "enum": [p.value for p in Platform],
                                "description": "Filter by platform",
                            },
                            "threshold": {
                                "type": "number",
                                "description": f"Low stock threshold (default {DEFAULT_LOW_STOCK_THRESHOLD})",
                            },
                        },
                        "additionalProperties": False,
                    },
                },
                "required": ["analysis_type"],
                "additionalProperties": False,
            },
        },
        ToolName.SEARCH: {
            "runs_in": RUNS_IN_AGENT,
            "description": (
                "Semantic product search in natural language (e.g. 'red mugs', "
                "'items tagged as gifts'). Use analytics for exact counts and totals."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Search query for products",
                    },
                },
                "required": ["query"],
                "additionalProperties": False,
            },
        },
    }


# ── Schema checking ───────────────────────────────────────────────────────────

_JSON_TYPES = {
    "object": dict,
    "string": str,
    "boolean": bool,
    "array": list,
}


def _check(schema: Dict[str, Any], value: Any, where: str) -> Optional[str]:
    """Return a description of the first mismatch, or None when value conforms."""
    expected = schema.get("type")

    if expected in ("number", "integer"):
        # bool is an int subclass; JSON true is not a number
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"{where} must be a {expected}"
        if expected == "integer" and isinstance(value, float) and not value.is_integer():
            return f"{where} must be an integer"
    elif expected in _JSON_TYPES and not isinstance(value, _JSON_TYPES[expected]):
        return f"{where} must be of type {expected}"

    if "enum" in schema and value not in schema["enum"]:
        return f"{where} must be one of {', '.join(map(str, schema['enum']))}"

    if expected == "object":
        props = schema.get("properties", {})
        for key in schema.get("required", []):
            if key not in value:
                return f"missing required field '{key}'"
        for key, item in value.items():
            if key not in props:
                if schema.get("additionalProperties", True) is False:
                    return f"unexpected field '{key}'"
                continue
            problem = _check(props[key], item, key if where == "arguments" else f"{where}.{key}")
            if problem:
                return problem
    return None


# ── Registry ──────────────────────────────────────────────────────────────────

class ToolRegistry:
    """
    Explicitly constructed registry; pass the same instance to the orchestrator
    and to the execution-server handlers.
    """

    def __init__(self, declarations: Optional[Dict[ToolName, Dict[str, Any]]] = None):
        decls = declarations if declarations is not None else default_declarations()
        missing = [t.value for t in ToolName if t not in decls]
        if missing:
            raise RuntimeError(f"Tool declarations missing for: {', '.join(missing)}")
        # Preserve enum order so every advertisement lists tools identically
        self._decls = {t: decls[t] for t in ToolName}

    def names(self) -> List[str]:
        return [t.value for t in self._decls]

    def runs_in(self, name: ToolName) -> str:
        return self._decls[name]["runs_in"]

    def tools_for(self, location: str) -> List[ToolName]:
        return [t for t, d in self._decls.items() if d["runs_in"] == location]

    def get_schemas(self) -> List[Dict[str, Any]]:
        return [
            {"name": t.value, "description": d["description"], "parameters": d["parameters"]}
            for t, d in self._decls.items()
        ]

    def provider_tools(self) -> List[Dict[str, Any]]:
        """Function specs in the chat-completions / Ollama shape."""
        return [{"type": "function", "function": schema} for schema in self.get_schemas()]

    def server_tools(self) -> List[Dict[str, Any]]:
        """Tool-list advertisement for the execution server (tools/list)."""
        return [
            {"name": s["name"], "description": s["description"], "inputSchema": s["parameters"]}
            for s in self.get_schemas()
            if self._decls[ToolName(s["name"])]["runs_in"] == RUNS_IN_SERVER
        ]

    def instructions(self) -> str:
        lines = "\n".join(f"- {s['name']}: {s['description']}" for s in self.get_schemas())
        return (
            f"Available tools:\n{lines}\n\n"
            "ALWAYS use the appropriate tool for user requests:\n"
            f"- For data operations ({', '.join(DATA_OPERATIONS)}): use data_operations\n"
            f"- For analytics ({', '.join(ANALYSIS_TYPES)}): use analytics\n"
            "- For finding products by description: use search\n\n"
            "Never refuse to use tools - always call the appropriate tool for the user's request."
        )

    def resolve(self, name: str) -> ToolName:
        try:
            return ToolName(name)
        except ValueError:
            raise UnknownTool(str(name), self.names()) from None

    def validate(self, name: str, args: Any) -> Tuple[ToolName, Dict[str, Any]]:
        """
        Resolve `name` to a ToolName and check `args` against its schema.

        Returns the arguments untouched when they conform. Raises UnknownTool
        for undeclared names and InvalidArguments for nonconforming shapes.
        """
        tool = self.resolve(name)
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise InvalidArguments(tool.value, "arguments must be an object")

        problem = _check(self._decls[tool]["parameters"], args, "arguments")
        if problem:
            raise InvalidArguments(tool.value, problem)
        return tool, args
