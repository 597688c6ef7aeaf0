"""HTTP transport: JSON endpoints for storing, retrieving and deleting memories."""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Callable, Optional

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from engram.metrics import Metrics

log = logging.getLogger(__name__)

Check = Callable[[], None]


class MemoryNotFoundError(LookupError):
    """The memory to delete does not exist."""


class _BadRequest(Exception):
    pass


def classify_error(err: BaseException) -> tuple[int, str]:
    """Map an error to an HTTP status and an error code by its message."""
    msg = str(err)
    if "embed" in msg:
        return 500, "embedding_failed"
    if "stor" in msg:
        return 500, "storage_failed"
    return 500, "retrieval_failed"


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def _json_response(status: int, value: Any) -> Response:
    body = json.dumps(_to_jsonable(value)) + "\n"
    return Response(body, status=status, mimetype="application/json")


def _error_response(status: int, code: str, message: str, retryable: bool) -> Response:
    return _json_response(
        status, {"error": {"code": code, "message": message, "retryable": retryable}}
    )


def _text_response(status: int, message: str) -> Response:
    return Response(message + "\n", status=status, mimetype="text/plain")


def _matches(value: Any, kind: type) -> bool:
    if kind is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, kind)


def _decode_body(request: Request, fields: dict[str, type]) -> dict[str, Any]:
    """Decode a JSON object, keeping the named fields; keys match case-insensitively."""
    try:
        data = json.loads(request.get_data(as_text=True))
    except ValueError as exc:
        raise _BadRequest(str(exc)) from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise _BadRequest("body is not a JSON object")
    out: dict[str, Any] = {}
    for raw_key, value in data.items():
        key = raw_key.lower()
        if key not in fields or value is None:
            continue
        if not _matches(value, fields[key]):
            raise _BadRequest(f"field {key!r} has the wrong type")
        out[key] = value
    return out


def _split_addr(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


class Server:
    """WSGI application for the memory API.

    ``ingestor`` provides ``store(content=, user_id=, source=, metadata=)`` and
    ``delete(memory_id)``; ``retriever`` provides
    ``retrieve(query=, user_id=, k=, rerank=)``; ``meta`` provides
    ``get_user_state(user_id)``. The readiness checks raise on failure.
    """

    def __init__(
        self,
        addr: str,
        ingestor: Any,
        retriever: Any,
        meta: Any,
        check_vec: Optional[Check] = None,
        check_embed: Optional[Check] = None,
    ) -> None:
        self.addr = addr
        self._ingestor = ingestor
        self._retriever = retriever
        self._meta = meta
        self._check_vec = check_vec
        self._check_embed = check_embed
        self.metrics = Metrics()
        self._httpd: Any = None
        self._lock = threading.Lock()
        self._url_map = Map(
            [
                Rule("/v1/memories", methods=["POST"], endpoint="store"),
                Rule("/v1/memories/<memory_id>", methods=["DELETE"], endpoint="delete"),
                Rule("/v1/retrieve", methods=["POST"], endpoint="retrieve"),
                Rule("/v1/users/", methods=["GET"], endpoint="user_state"),
                Rule("/v1/users/<path:rest>", methods=["GET"], endpoint="user_state"),
                Rule("/healthz", methods=["GET"], endpoint="healthz"),
                Rule("/readyz", methods=["GET"], endpoint="readyz"),
                Rule("/metrics", methods=["GET"], endpoint="metrics"),
            ]
        )

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Any:
        request = Request(environ)
        adapter = self._url_map.bind_to_environ(environ)
        try:
            endpoint, args = adapter.match()
        except HTTPException as exc:
            return exc(environ, start_response)

        if endpoint == "metrics":
            return self.metrics.wsgi_app(environ, start_response)
        if endpoint == "healthz":
            response = self._healthz(request)
        elif endpoint == "readyz":
            response = self._readyz(request)
        else:
            handlers = {
                "store": self._store_memory,
                "delete": self._delete_memory,
                "retrieve": self._retrieve_context,
                "user_state": self._get_user_state,
            }
            response = self._guarded(request, handlers[endpoint], args)
        return response(environ, start_response)

    def listen_and_serve(self) -> None:
        """Serve on ``addr`` until :meth:`shutdown` is called."""
        host, port = _split_addr(self.addr)
        httpd = make_server(host, port, self, threaded=True)
        with self._lock:
            self._httpd = httpd
        try:
            httpd.serve_forever()
        finally:
            httpd.server_close()
            with self._lock:
                self._httpd = None

    def shutdown(self) -> None:
        """Stop a running :meth:`listen_and_serve`."""
        with self._lock:
            httpd = self._httpd
        if httpd is not None:
            httpd.shutdown()

    def _guarded(
        self, request: Request, handler: Callable[..., Response], args: dict[str, Any]
    ) -> Response:
        start = time.monotonic()
        try:
            response = handler(request, **args)
        except Exception:
            log.exception("panic in handler path=%s", request.path)
            return _error_response(500, "internal_error", "internal server error", False)
        log.info(
            "request method=%s path=%s status=%d dur_ms=%d",
            request.method,
            request.path,
            response.status_code,
            int((time.monotonic() - start) * 1000),
        )
        return response

    def _store_memory(self, request: Request) -> Response:
        try:
            req = _decode_body(
                request, {"content": str, "user_id": str, "source": str, "metadata": dict}
            )
        except _BadRequest:
            return _error_response(400, "invalid_input", "invalid JSON body", False)
        content = req.get("content", "")
        if not content.strip():
            return _error_response(400, "invalid_input", "content is required", False)
        store = self._ingestor.store
        try:
            result = store(
                content=content,
                user_id=req.get("user_id", ""),
                source=req.get("source", ""),
                metadata=req.get("metadata"),
            )
        except Exception as exc:
            status, code = classify_error(exc)
            return _error_response(status, code, str(exc), True)
        return _json_response(200, result)

    def _delete_memory(self, request: Request, memory_id: str) -> Response:
        if not memory_id:
            return _text_response(400, "missing memory id")
        delete = self._ingestor.delete
        try:
            delete(memory_id)
        except MemoryNotFoundError:
            return _text_response(404, "not found")
        except Exception as exc:
            return _text_response(500, str(exc))
        return Response(status=204)

    def _retrieve_context(self, request: Request) -> Response:
        try:
            req = _decode_body(
                request, {"query": str, "user_id": str, "k": int, "rerank": bool}
            )
        except _BadRequest:
            return _error_response(400, "invalid_input", "invalid JSON body", False)
        query = req.get("query", "")
        if not query.strip():
            return _error_response(400, "invalid_input", "query is required", False)
        retrieve = self._retriever.retrieve
        try:
            result = retrieve(
                query=query,
                user_id=req.get("user_id", ""),
                k=req.get("k", 0),
                rerank=req.get("rerank", False),
            )
        except Exception as exc:
            status, code = classify_error(exc)
            return _error_response(status, code, str(exc), True)
        return _json_response(200, result)

    def _get_user_state(self, request: Request, rest: str = "") -> Response:
        user_id = request.path.removeprefix("/v1/users/").removesuffix("/state")
        if not user_id:
            user_id = "default"
        get_state = self._meta.get_user_state
        try:
            state = get_state(user_id)
        except Exception as exc:
            return _error_response(500, "retrieval_failed", str(exc), True)
        return _json_response(200, state)

    def _healthz(self, request: Request) -> Response:
        return _json_response(200, {"status": "ok"})

    def _readyz(self, request: Request) -> Response:
        errors: list[str] = []
        for label, check in (("vector", self._check_vec), ("embed", self._check_embed)):
            if check is None:
                continue
            try:
                check()
            except Exception as exc:
                errors.append(f"{label}: {exc}")
        if errors:
            return _error_response(503, "not_ready", "; ".join(errors), True)
        return _json_response(200, {"status": "ready"})