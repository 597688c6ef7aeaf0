"""Model Context Protocol tools over a line-delimited JSON-RPC stdio transport."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, TextIO

log = logging.getLogger(__name__)

SERVER_NAME = "engram"
SERVER_VERSION = "1.0.0"
LATEST_PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

_USER_ID_DESC = 'User namespace (default: "default").'
_STORE_DESC = "Ingest content into Engram memory with optional user, source, and metadata."
_RETRIEVE_DESC = (
    "Retrieve relevant memory chunks via hybrid search (vector + BM25 + optional rerank)."
)
_STATE_DESC = "Return aggregate memory statistics for a user."
_ERASE_DESC = "Delete a memory by ID."


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


@dataclass
class ToolResult:
    """The text outcome of a tool call; ``is_error`` marks a failed call."""

    text: str
    is_error: bool = False

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"content": [{"type": "text", "text": self.text}]}
        if self.is_error:
            out["isError"] = True
        return out


def error_result(code: str, message: str, retryable: bool) -> ToolResult:
    """Build an error result carrying the uniform JSON error envelope."""
    envelope = {"error": {"code": code, "message": message, "retryable": retryable}}
    return ToolResult(text=_dumps(envelope), is_error=True)


def is_embed_error(err: Optional[BaseException]) -> bool:
    """True when the error message suggests an embedding failure."""
    if err is None:
        return False
    msg = str(err)
    return "embed" in msg or "Embed" in msg


def get_bool(arguments: Optional[Mapping[str, Any]], key: str, default: bool) -> bool:
    """Read a boolean argument; numbers count as true when non-zero."""
    if not arguments:
        return default
    value = arguments.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return default


class _InvalidArgument(ValueError):
    pass


def _require_string(arguments: Mapping[str, Any], key: str) -> str:
    if key not in arguments:
        raise _InvalidArgument(f'required argument "{key}" not found')
    value = arguments[key]
    if not isinstance(value, str):
        raise _InvalidArgument(f'argument "{key}" is not a string')
    return value


def _get_string(arguments: Mapping[str, Any], key: str, default: str) -> str:
    value = arguments.get(key)
    return value if isinstance(value, str) else default


def _get_int(arguments: Mapping[str, Any], key: str, default: int) -> int:
    value = arguments.get(key)
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.replace(microsecond=0).isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return _rfc3339(value)
    return str(value)


def _string_prop(description: str) -> dict[str, Any]:
    return {"type": "string", "description": description}


def _schema(properties: dict[str, Any], required: Iterable[str]) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    required = list(required)
    if required:
        schema["required"] = required
    return schema


def _store_schema() -> dict[str, Any]:
    return _schema(
        {
            "content": _string_prop("The content to store."),
            "user_id": _string_prop(_USER_ID_DESC),
            "source": _string_prop("Origin label (e.g. filename, URL)."),
            "metadata": {"type": "object", "description": "Arbitrary JSON metadata object."},
        },
        ["content"],
    )


def _retrieve_schema() -> dict[str, Any]:
    return _schema(
        {
            "query": _string_prop("The search query."),
            "user_id": _string_prop(_USER_ID_DESC),
            "k": {"type": "number", "description": "Number of results to return (default: 5)."},
            "rerank": {
                "type": "boolean",
                "description": "Whether to apply reranking (default: false).",
            },
        },
        ["query"],
    )


def _state_schema() -> dict[str, Any]:
    return _schema({"user_id": _string_prop(_USER_ID_DESC)}, [])


def _erase_schema() -> dict[str, Any]:
    return _schema(
        {"memory_id": _string_prop("The ID of the memory to delete.")}, ["memory_id"]
    )


Handler = Callable[[Mapping[str, Any]], ToolResult]


class ToolServer:
    """Memory tools exposed over MCP.

    ``ingestor`` provides ``store(content=, user_id=, source=, metadata=)`` and
    ``delete(memory_id)``; ``retriever`` provides
    ``retrieve(query=, user_id=, k=, rerank=)``; ``meta`` provides
    ``get_user_state(user_id)``.
    """

    def __init__(self, ingestor: Any, retriever: Any, meta: Any) -> None:
        self._ingestor = ingestor
        self._retriever = retriever
        self._meta = meta
        self._tools: dict[str, tuple[dict[str, Any], Handler]] = {}
        for name in ("store_memory",):
            self._register(name, _STORE_DESC, _store_schema(), self._handle_store_memory)
        self._register("retrieve_context", _RETRIEVE_DESC, _retrieve_schema(),
                       self._handle_retrieve_context)
        self._register("get_user_state", _STATE_DESC, _state_schema(),
                       self._handle_get_user_state)
        for name in ("write_memory", "remember"):
            self._register(name, _STORE_DESC, _store_schema(), self._handle_store_memory)
        for name in ("read_memory", "recall"):
            self._register(name, _RETRIEVE_DESC, _retrieve_schema(),
                           self._handle_retrieve_context)
        for name in ("user_state", "status"):
            self._register(name, _STATE_DESC, _state_schema(), self._handle_get_user_state)
        for name in ("erase_memory", "forget"):
            self._register(name, _ERASE_DESC, _erase_schema(), self._handle_erase_memory)

    def _register(self, name: str, description: str, schema: dict[str, Any],
                  handler: Handler) -> None:
        definition = {"name": name, "description": description, "inputSchema": schema}
        self._tools[name] = (definition, handler)

    def tools(self) -> list[dict[str, Any]]:
        """Return the definitions of all registered tools."""
        return [json.loads(_dumps(definition)) for definition, _ in self._tools.values()]

    def call_tool(self, name: str, arguments: Optional[Mapping[str, Any]]) -> ToolResult:
        """Run a tool by name; an unknown name raises KeyError."""
        entry = self._tools.get(name)
        if entry is None:
            raise KeyError(f"tool '{name}' not found")
        return entry[1](arguments or {})

    # --- tool handlers ---

    def _handle_store_memory(self, arguments: Mapping[str, Any]) -> ToolResult:
        try:
            content = _require_string(arguments, "content")
        except _InvalidArgument as exc:
            return error_result("invalid_input", str(exc), False)
        content = content.strip()
        if not content:
            return error_result("invalid_input", "content must not be empty", False)

        metadata = arguments.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            return error_result("invalid_input", "metadata must be a JSON object", False)

        try:
            result = self._ingestor.store(
                content=content,
                user_id=_get_string(arguments, "user_id", ""),
                source=_get_string(arguments, "source", ""),
                metadata=metadata,
            )
        except Exception as exc:
            code = "embedding_failed" if is_embed_error(exc) else "storage_failed"
            return error_result(code, str(exc), True)

        out = {
            "memory_id": _text(getattr(result, "memory_id", "")),
            "chunks_stored": int(getattr(result, "chunks_stored", 0)),
            "chunks_deduped": int(getattr(result, "chunks_deduped", 0)),
            "stored": bool(getattr(result, "stored", False)),
        }
        return ToolResult(text=_dumps(out))

    def _handle_retrieve_context(self, arguments: Mapping[str, Any]) -> ToolResult:
        try:
            query = _require_string(arguments, "query")
        except _InvalidArgument as exc:
            return error_result("invalid_input", str(exc), False)
        query = query.strip()
        if not query:
            return error_result("invalid_input", "query must not be empty", False)

        try:
            resp = self._retriever.retrieve(
                query=query,
                user_id=_get_string(arguments, "user_id", ""),
                k=_get_int(arguments, "k", 0),
                rerank=get_bool(arguments, "rerank", False),
            )
        except Exception as exc:
            code = "embedding_failed" if is_embed_error(exc) else "retrieval_failed"
            return error_result(code, str(exc), True)

        items = [
            {
                "memory_id": _text(getattr(r, "memory_id", "")),
                "chunk_id": _text(getattr(r, "chunk_id", "")),
                "content": _text(getattr(r, "content", "")),
                "score": float(getattr(r, "score", 0.0)),
                "source": _text(getattr(r, "source", "")),
                "created_at": _text(getattr(r, "created_at", "")),
            }
            for r in (getattr(resp, "results", None) or [])
        ]
        stats = getattr(resp, "stats", None)
        out = {
            "results": items,
            "stats": {
                "vec_ms": int(getattr(stats, "vec_ms", 0)),
                "bm25_ms": int(getattr(stats, "bm25_ms", 0)),
                "fusion_ms": int(getattr(stats, "fusion_ms", 0)),
                "rerank_ms": int(getattr(stats, "rerank_ms", 0)),
                "total_ms": int(getattr(stats, "total_ms", 0)),
                "rerank_skipped": bool(getattr(stats, "rerank_skipped", False)),
                "degraded": bool(getattr(stats, "degraded", False)),
            },
        }
        return ToolResult(text=_dumps(out))

    def _handle_get_user_state(self, arguments: Mapping[str, Any]) -> ToolResult:
        user_id = _get_string(arguments, "user_id", "default")
        if not user_id.strip():
            user_id = "default"
        try:
            state = self._meta.get_user_state(user_id)
        except Exception as exc:
            return error_result("retrieval_failed", f"get user state: {exc}", True)

        out: dict[str, Any] = {
            "memory_count": int(getattr(state, "memory_count", 0)),
            "chunk_count": int(getattr(state, "chunk_count", 0)),
        }
        for key in ("first_memory", "last_memory"):
            moment = getattr(state, key, None)
            if moment is not None:
                out[key] = _text(moment)
        out["top_sources"] = list(getattr(state, "top_sources", None) or [])
        return ToolResult(text=_dumps(out))

    def _handle_erase_memory(self, arguments: Mapping[str, Any]) -> ToolResult:
        try:
            memory_id = _require_string(arguments, "memory_id")
        except _InvalidArgument as exc:
            return error_result("invalid_input", str(exc), False)
        memory_id = memory_id.strip()
        if not memory_id:
            return error_result("invalid_input", "memory_id must not be empty", False)
        try:
            self._ingestor.delete(memory_id)
        except Exception as exc:
            return error_result("delete_failed", str(exc), False)
        return ToolResult(text='{"deleted":true}')

    # --- JSON-RPC transport ---

    def handle_message(self, message: Any) -> Optional[dict[str, Any]]:
        """Answer one JSON-RPC message; notifications return None."""
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            msg_id = message.get("id") if isinstance(message, dict) else None
            return _rpc_error(msg_id, INVALID_REQUEST, "Invalid Request")

        is_notification = "id" not in message
        msg_id = message.get("id")
        method = message["method"]
        params = message.get("params")
        if params is None:
            params = {}

        if is_notification:
            return None

        if method == "initialize":
            requested = params.get("protocolVersion") if isinstance(params, dict) else None
            version = (
                requested if requested in SUPPORTED_PROTOCOL_VERSIONS
                else LATEST_PROTOCOL_VERSION
            )
            return _rpc_result(msg_id, {
                "protocolVersion": version,
                "capabilities": {"tools": {"listChanged": True}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            })
        if method == "ping":
            return _rpc_result(msg_id, {})
        if method == "tools/list":
            return _rpc_result(msg_id, {"tools": self.tools()})
        if method == "tools/call":
            if not isinstance(params, dict) or not isinstance(params.get("name"), str):
                return _rpc_error(msg_id, INVALID_PARAMS, "tool name is required")
            arguments = params.get("arguments")
            if arguments is not None and not isinstance(arguments, dict):
                return _rpc_error(msg_id, INVALID_PARAMS, "arguments must be an object")
            try:
                result = self.call_tool(params["name"], arguments)
            except KeyError as exc:
                return _rpc_error(msg_id, INVALID_PARAMS, str(exc.args[0]))
            return _rpc_result(msg_id, result.to_json())
        return _rpc_error(msg_id, METHOD_NOT_FOUND, f"Method {method} not found")

    def serve_stdio(self, stdin: Optional[TextIO] = None,
                    stdout: Optional[TextIO] = None) -> None:
        """Serve newline-delimited JSON-RPC until ``stdin`` reaches end of file."""
        stdin = stdin if stdin is not None else sys.stdin
        stdout = stdout if stdout is not None else sys.stdout
        for line in stdin:
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError as exc:
                log.warning("invalid JSON-RPC message: %s", exc)
                response: Optional[dict[str, Any]] = _rpc_error(None, PARSE_ERROR, "Parse error")
            else:
                response = self.handle_message(message)
            if response is not None:
                stdout.write(_dumps(response) + "\n")
                stdout.flush()


def _rpc_result(msg_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "result": result}


def _rpc_error(msg_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}