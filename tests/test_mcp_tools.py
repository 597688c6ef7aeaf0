import io
import json
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from engram.mcp_tools import (
    ToolResult,
    ToolServer,
    error_result,
    get_bool,
    is_embed_error,
)

ALL_TOOLS = {
    "store_memory", "retrieve_context", "get_user_state", "write_memory", "remember",
    "read_memory", "recall", "user_state", "status", "erase_memory", "forget",
}


class FakeIngestor:
    def __init__(self, error=None):
        self.error = error
        self.stored = []
        self.deleted = []

    def store(self, content, user_id, source, metadata):
        if self.error:
            raise self.error
        self.stored.append((content, user_id, source, metadata))
        return SimpleNamespace(memory_id="mem-1", chunks_stored=2, chunks_deduped=1, stored=True)

    def delete(self, memory_id):
        if self.error:
            raise self.error
        self.deleted.append(memory_id)


class FakeRetriever:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def retrieve(self, query, user_id, k, rerank):
        if self.error:
            raise self.error
        self.calls.append((query, user_id, k, rerank))
        result = SimpleNamespace(memory_id="m1", chunk_id="c1", content="hello",
                                 score=0.5, source="s", created_at="2024-01-01")
        stats = SimpleNamespace(vec_ms=1, bm25_ms=2, fusion_ms=3, rerank_ms=4,
                                total_ms=10, rerank_skipped=True, degraded=False)
        return SimpleNamespace(results=[result], stats=stats)


class FakeMeta:
    def __init__(self, state=None, error=None):
        self.state = state
        self.error = error
        self.users = []

    def get_user_state(self, user_id):
        self.users.append(user_id)
        if self.error:
            raise self.error
        return self.state


def make_server(ingestor=None, retriever=None, meta=None):
    return ToolServer(ingestor or FakeIngestor(), retriever or FakeRetriever(), meta or FakeMeta())


def test_new_server_with_no_dependencies_registers_tools():
    server = ToolServer(None, None, None)
    assert {t["name"] for t in server.tools()} == ALL_TOOLS


def test_tool_schemas_mark_required_fields():
    tools = {t["name"]: t for t in make_server().tools()}
    assert tools["store_memory"]["inputSchema"]["required"] == ["content"]
    assert tools["recall"]["inputSchema"]["required"] == ["query"]
    assert tools["forget"]["inputSchema"]["required"] == ["memory_id"]
    assert "required" not in tools["status"]["inputSchema"]


def test_store_memory_success():
    ingestor = FakeIngestor()
    server = make_server(ingestor=ingestor)
    result = server.call_tool("remember", {"content": "  hi  ", "metadata": {"a": 1}})
    assert not result.is_error
    assert json.loads(result.text) == {
        "memory_id": "mem-1", "chunks_stored": 2, "chunks_deduped": 1, "stored": True,
    }
    assert ingestor.stored == [("hi", "", "", {"a": 1})]


def test_store_memory_missing_content():
    result = make_server().call_tool("store_memory", {})
    assert result.is_error
    err = json.loads(result.text)["error"]
    assert err["code"] == "invalid_input"
    assert err["message"] == 'required argument "content" not found'
    assert err["retryable"] is False


def test_store_memory_blank_content():
    result = make_server().call_tool("store_memory", {"content": "   "})
    assert json.loads(result.text)["error"]["message"] == "content must not be empty"


def test_store_memory_metadata_must_be_object():
    result = make_server().call_tool("store_memory", {"content": "x", "metadata": [1]})
    assert json.loads(result.text)["error"]["message"] == "metadata must be a JSON object"


@pytest.mark.parametrize("message,code", [
    ("embed batch failed", "embedding_failed"),
    ("db down", "storage_failed"),
])
def test_store_memory_error_codes(message, code):
    server = make_server(ingestor=FakeIngestor(error=RuntimeError(message)))
    err = json.loads(server.call_tool("write_memory", {"content": "x"}).text)["error"]
    assert err["code"] == code
    assert err["retryable"] is True


def test_retrieve_context_success_and_arguments():
    retriever = FakeRetriever()
    server = make_server(retriever=retriever)
    result = server.call_tool("retrieve_context", {"query": " q ", "k": 3.0, "rerank": 1})
    out = json.loads(result.text)
    assert out["results"][0]["chunk_id"] == "c1"
    assert out["stats"]["total_ms"] == 10
    assert out["stats"]["rerank_skipped"] is True
    assert retriever.calls == [("q", "", 3, True)]


def test_retrieve_context_errors():
    server = make_server(retriever=FakeRetriever(error=RuntimeError("boom")))
    err = json.loads(server.call_tool("recall", {"query": "q"}).text)["error"]
    assert err["code"] == "retrieval_failed"
    empty = json.loads(server.call_tool("read_memory", {"query": ""}).text)["error"]
    assert empty["message"] == "query must not be empty"


def test_get_user_state_formats_times_and_defaults():
    first = datetime(2024, 5, 1, 12, 30, 45, 123, tzinfo=timezone.utc)
    meta = FakeMeta(state=SimpleNamespace(memory_count=3, chunk_count=7, first_memory=first,
                                          last_memory=None, top_sources=None))
    server = make_server(meta=meta)
    out = json.loads(server.call_tool("get_user_state", {"user_id": "  "}).text)
    assert out == {"memory_count": 3, "chunk_count": 7,
                   "first_memory": "2024-05-01T12:30:45Z", "top_sources": []}
    assert meta.users == ["default"]


def test_get_user_state_error():
    server = make_server(meta=FakeMeta(error=RuntimeError("nope")))
    err = json.loads(server.call_tool("status", None).text)["error"]
    assert err["message"] == "get user state: nope"


def test_erase_memory():
    ingestor = FakeIngestor()
    result = make_server(ingestor=ingestor).call_tool("forget", {"memory_id": " m9 "})
    assert result.text == '{"deleted":true}'
    assert ingestor.deleted == ["m9"]
    failing = make_server(ingestor=FakeIngestor(error=RuntimeError("gone")))
    err = json.loads(failing.call_tool("erase_memory", {"memory_id": "x"}).text)["error"]
    assert err == {"code": "delete_failed", "message": "gone", "retryable": False}


def test_unknown_tool_raises():
    with pytest.raises(KeyError):
        make_server().call_tool("nope", {})


def test_error_result_and_to_json():
    result = error_result("c", "m", True)
    assert result.to_json() == {"content": [{"type": "text", "text": result.text}], "isError": True}
    assert ToolResult("ok").to_json() == {"content": [{"type": "text", "text": "ok"}]}


def test_is_embed_error():
    assert is_embed_error(RuntimeError("Embedder broke"))
    assert is_embed_error(RuntimeError("embed failed"))
    assert not is_embed_error(RuntimeError("other"))
    assert not is_embed_error(None)


@pytest.mark.parametrize("args,expected", [
    (None, True), ({}, True), ({"k": True}, True), ({"k": False}, False),
    ({"k": 0}, False), ({"k": 2.5}, True), ({"k": "yes"}, True), ({"k": None}, True),
])
def test_get_bool(args, expected):
    assert get_bool(args, "k", True) is expected


def test_handle_message_initialize_and_list():
    server = make_server()
    init = server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "initialize",
                                  "params": {"protocolVersion": "2024-11-05"}})
    assert init["result"]["protocolVersion"] == "2024-11-05"
    assert init["result"]["serverInfo"] == {"name": "engram", "version": "1.0.0"}
    listing = server.handle_message({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
    assert len(listing["result"]["tools"]) == 11
    assert server.handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None


def test_handle_message_call_and_errors():
    server = make_server()
    call = server.handle_message({"jsonrpc": "2.0", "id": 3, "method": "tools/call",
                                  "params": {"name": "forget", "arguments": {"memory_id": "a"}}})
    assert call["result"]["content"][0]["text"] == '{"deleted":true}'
    missing = server.handle_message({"jsonrpc": "2.0", "id": 4, "method": "tools/call",
                                     "params": {"name": "nope"}})
    assert missing["error"]["code"] == -32602
    unknown = server.handle_message({"jsonrpc": "2.0", "id": 5, "method": "bogus"})
    assert unknown["error"]["code"] == -32601
    invalid = server.handle_message([1, 2])
    assert invalid["error"]["code"] == -32600


def test_serve_stdio_round_trip():
    lines = "\n".join([
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ping"}),
        "not json",
        "",
        json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
    ]) + "\n"
    out = io.StringIO()
    make_server().serve_stdio(io.StringIO(lines), out)
    responses = [json.loads(line) for line in out.getvalue().splitlines()]
    assert responses == [
        {"jsonrpc": "2.0", "id": 1, "result": {}},
        {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}},
    ]