import json
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest
from werkzeug.test import Client

from engram.httpserver import MemoryNotFoundError, Server, classify_error


class FakeIngestor:
    def __init__(self, result=None, error=None, delete_error=None):
        self.result = result
        self.error = error
        self.delete_error = delete_error
        self.calls = []
        self.deleted = []

    def store(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result

    def delete(self, memory_id):
        self.deleted.append(memory_id)
        if self.delete_error is not None:
            raise self.delete_error


class FakeRetriever:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def retrieve(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


class FakeMeta:
    def __init__(self, state=None, error=None):
        self.state = state
        self.error = error
        self.user_ids = []

    def get_user_state(self, user_id):
        self.user_ids.append(user_id)
        if self.error is not None:
            raise self.error
        return self.state


@dataclass
class StoreResult:
    MemoryID: str
    ChunksStored: int
    Stored: bool


def client(ingestor=None, retriever=None, meta=None, check_vec=None, check_embed=None):
    server = Server(":0", ingestor, retriever, meta or FakeMeta(), check_vec, check_embed)
    return server, Client(server)


def post(c, path, body):
    return c.post(path, data=body, content_type="application/json")


def test_store_memory_happy_path():
    ing = FakeIngestor(result={"MemoryID": "abc", "ChunksStored": 2, "Stored": True})
    _, c = client(ingestor=ing)
    resp = post(c, "/v1/memories", '{"content":"hello world"}')
    assert resp.status_code == 200
    assert resp.get_json()["MemoryID"] == "abc"
    assert ing.calls[0]["content"] == "hello world"


def test_store_memory_dataclass_result():
    ing = FakeIngestor(result=StoreResult("m9", 1, True))
    _, c = client(ingestor=ing)
    resp = post(c, "/v1/memories", '{"Content":"hi","user_id":"u1"}')
    assert resp.get_json() == {"MemoryID": "m9", "ChunksStored": 1, "Stored": True}
    assert ing.calls[0]["content"] == "hi"
    assert ing.calls[0]["user_id"] == "u1"


def test_store_memory_missing_content():
    _, c = client(ingestor=FakeIngestor())
    resp = post(c, "/v1/memories", '{"content":""}')
    assert resp.status_code == 400
    err = resp.get_json()["error"]
    assert err == {"code": "invalid_input", "message": "content is required", "retryable": False}


def test_store_memory_invalid_json():
    _, c = client(ingestor=FakeIngestor())
    resp = post(c, "/v1/memories", "{not json")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["message"] == "invalid JSON body"


def test_store_memory_embed_error_classified():
    ing = FakeIngestor(error=RuntimeError("embed: circuit breaker open"))
    _, c = client(ingestor=ing)
    resp = post(c, "/v1/memories", '{"content":"x"}')
    assert resp.status_code == 500
    err = resp.get_json()["error"]
    assert err["code"] == "embedding_failed"
    assert err["retryable"] is True


def test_retrieve_context_happy_path():
    ret = FakeRetriever(result={"Results": [{"MemoryID": "m1", "Content": "hello"}]})
    _, c = client(retriever=ret)
    resp = post(c, "/v1/retrieve", '{"query":"hello","k":3,"rerank":true}')
    assert resp.status_code == 200
    assert resp.get_json()["Results"][0]["MemoryID"] == "m1"
    assert ret.calls[0] == {"query": "hello", "user_id": "", "k": 3, "rerank": True}


def test_retrieve_context_missing_query():
    _, c = client(retriever=FakeRetriever())
    resp = post(c, "/v1/retrieve", '{"query":"   "}')
    assert resp.status_code == 400
    assert resp.get_json()["error"]["message"] == "query is required"


def test_retrieve_context_wrong_type():
    _, c = client(retriever=FakeRetriever())
    resp = post(c, "/v1/retrieve", '{"query":"q","k":"five"}')
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "invalid_input"


def test_get_user_state():
    meta = FakeMeta(state={
        "MemoryCount": 3,
        "ChunkCount": 7,
        "FirstMemory": datetime(2024, 1, 2, tzinfo=timezone.utc),
    })
    _, c = client(meta=meta)
    resp = c.get("/v1/users/alice/state")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["MemoryCount"] == 3
    assert data["FirstMemory"] == "2024-01-02T00:00:00+00:00"
    assert meta.user_ids == ["alice"]


def test_get_user_state_default_user():
    meta = FakeMeta(state={"MemoryCount": 0})
    _, c = client(meta=meta)
    resp = c.get("/v1/users/")
    assert resp.status_code == 200
    assert meta.user_ids == ["default"]


def test_get_user_state_error():
    _, c = client(meta=FakeMeta(error=RuntimeError("db down")))
    resp = c.get("/v1/users/bob/state")
    assert resp.status_code == 500
    assert resp.get_json()["error"] == {
        "code": "retrieval_failed", "message": "db down", "retryable": True,
    }


def test_healthz():
    _, c = client()
    resp = c.get("/healthz")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}


def test_readyz_all_pass():
    _, c = client(check_vec=lambda: None, check_embed=lambda: None)
    resp = c.get("/readyz")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ready"}


def _raiser(message):
    def check():
        raise RuntimeError(message)
    return check


def test_readyz_vec_fails():
    _, c = client(check_vec=_raiser("qdrant down"), check_embed=lambda: None)
    resp = c.get("/readyz")
    assert resp.status_code == 503
    assert resp.get_json()["error"]["message"] == "vector: qdrant down"


def test_readyz_both_fail():
    _, c = client(check_vec=_raiser("a"), check_embed=_raiser("b"))
    resp = c.get("/readyz")
    assert resp.get_json()["error"]["message"] == "vector: a; embed: b"


def test_recover_missing_dependency_returns_500():
    _, c = client(ingestor=None)
    resp = post(c, "/v1/memories", '{"content":"x"}')
    assert resp.status_code == 500
    assert resp.get_json()["error"] == {
        "code": "internal_error", "message": "internal server error", "retryable": False,
    }


def test_recover_unencodable_result_returns_500():
    _, c = client(ingestor=FakeIngestor(result=object()))
    resp = post(c, "/v1/memories", '{"content":"x"}')
    assert resp.status_code == 500
    assert resp.get_json()["error"]["code"] == "internal_error"


def test_delete_memory_ok():
    ing = FakeIngestor()
    _, c = client(ingestor=ing)
    resp = c.delete("/v1/memories/m1")
    assert resp.status_code == 204
    assert ing.deleted == ["m1"]


def test_delete_memory_not_found():
    _, c = client(ingestor=FakeIngestor(delete_error=MemoryNotFoundError("m1")))
    resp = c.delete("/v1/memories/m1")
    assert resp.status_code == 404
    assert resp.get_data(as_text=True) == "not found\n"


def test_delete_memory_other_error():
    _, c = client(ingestor=FakeIngestor(delete_error=RuntimeError("boom")))
    resp = c.delete("/v1/memories/m1")
    assert resp.status_code == 500
    assert "boom" in resp.get_data(as_text=True)


def test_metrics_route():
    server, c = client()
    server.metrics.set_pending_vectors(3)
    resp = c.get("/metrics")
    assert resp.status_code == 200
    assert "engram_pending_vectors 3" in resp.get_data(as_text=True)


def test_unknown_route_and_wrong_method():
    _, c = client()
    assert c.get("/nope").status_code == 404
    assert c.get("/v1/memories").status_code == 405


@pytest.mark.parametrize(
    "message, expected",
    [
        ("embed failed", (500, "embedding_failed")),
        ("storing chunks", (500, "storage_failed")),
        ("something else", (500, "retrieval_failed")),
        ("embed and store", (500, "embedding_failed")),
    ],
)
def test_classify_error(message, expected):
    assert classify_error(RuntimeError(message)) == expected


def test_json_body_has_trailing_newline():
    _, c = client()
    body = c.get("/healthz").get_data(as_text=True)
    assert body.endswith("\n")
    assert json.loads(body) == {"status": "ok"}