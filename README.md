# engram

Building blocks for long-term assistant memory. Text is split into
topic-coherent chunks with an embedder. Vector and full-text search results
are fused into one ranking. The package also contains:

- a JSON HTTP API as a WSGI application;
- MCP tools served over stdio;
- a client and command handlers that talk to a running API server.

## What is inside

| Module | Purpose |
| --- | --- |
| `engram.embed` | The `Embedder` interface and `OllamaEmbedder`, which batches requests to Ollama's `/api/embed`, retries server errors and has a circuit breaker (`CircuitState`, `CircuitOpenError`). |
| `engram.onnx` | `ONNXConfig` and an `ONNXEmbedder` placeholder whose constructor and embedding methods raise `ONNXEmbedNotBuiltError`. |
| `engram.chunk` | The semantic `Chunker` and the helpers `split_sentences`, `token_count`, `cosine` and `mean_vec`. |
| `engram.fusion` | Reciprocal Rank Fusion of `VecHit` and `BM25Hit` lists with `fuse`. |
| `engram.parse` | Turns raw text into `ParsedFact`s (`OllamaParser`, `NopParser`), plus `split_paragraphs` and `read_file_text`. |
| `engram.client` | The HTTP `Client` for a running API server; failures raise `ApiError`. |
| `engram.commands` | The handlers `run_add`, `run_find`, `run_remove` and `run_status`, which print their results. |
| `engram.metrics` | `Counter`, `Gauge`, `Histogram` and `Metrics`, with Prometheus text exposition. |
| `engram.httpserver` | The WSGI `Server` for `/v1/memories`, `/v1/retrieve`, `/v1/users/<id>/state`, `/healthz`, `/readyz` and `/metrics`. |
| `engram.mcp_tools` | `ToolServer`, which answers MCP JSON-RPC messages line by line. |

## Installing

Python 3.10 or newer is required. The runtime dependencies are `requests`
and `werkzeug`. The `test` extra adds `pytest` and `responses`.

## Semantic chunking

`Chunker` adds consecutive sentences to a chunk while each new sentence stays
close to the chunk's centroid embedding. A new chunk starts in two cases:

- the cosine similarity falls below `similarity_threshold`;
- the chunk would grow past `max_tokens`.

After that, chunks smaller than `min_tokens` are merged into a neighbour. A
zero value in `ChunkerConfig` is replaced by its default: 512, 100 or 0.6.

```python
from engram.chunk import Chunker, ChunkerConfig, split_sentences, token_count
from engram.embed import EmbedderConfig, OllamaEmbedder

split_sentences("Dr. Smith arrived. He was late.")
# ['Dr. Smith arrived.', 'He was late.']

token_count("hello, world!")
# 2

embedder = OllamaEmbedder(EmbedderConfig(
    base_url="http://localhost:11434", model="nomic-embed-text", dim=768, retries=3,
))
chunker = Chunker(embedder, ChunkerConfig(max_tokens=512, min_tokens=100, similarity_threshold=0.6))
for chunk in chunker.chunk(long_text):
    print(chunk.content, len(chunk.emb_vec))
```

The chunker accepts any `Embedder`, meaning any object that implements
`embed_batch`, `embed_query` and `dim`.

## Hybrid retrieval fusion

`fuse` combines the two ranked lists. Each hit adds `1 / (k + rank)` to the
score of its chunk. A chunk is kept in either of two cases:

- one of its vector hits reaches `vector_floor`;
- one of its BM25 hits has a rank within `bm25_k`.

Results are ordered by score, highest first. Ties are broken by chunk id.

```python
from engram.fusion import BM25Hit, FusionConfig, VecHit, fuse

results = fuse(
    FusionConfig(k=60, vector_floor=0.25, bm25_k=10),
    [VecHit(chunk_id="v1", memory_id="m1", score=0.9)],
    [BM25Hit(chunk_id="b1", memory_id="m2", content="notes", rank=0.5)],
)
```

## Talking to a server

```python
from engram.client import Client

client = Client("http://localhost:8080", "default", 15.0)
client.store("Alice prefers tea", "conversation", ["preferences", "drink", "tea"])
response = client.retrieve("what does Alice drink?", 5, True)
for result in response.results:
    print(result.memory_id, result.score, result.content)
```

The handlers in `engram.commands` take a `RunConfig`, which holds a client,
a parser and a user id. They print to standard output.

- `run_add` stores text, a `.txt`/`.md` file or a directory of them.
- `run_remove` deletes by id, or by query after a `[y/N]` prompt unless forced.

## Serving

`engram.httpserver.Server` is a WSGI application. You can mount it in any
WSGI container, or start it with `listen_and_serve` and stop it with
`shutdown`.

The objects passed to `Server` must provide these methods:

- the ingestor: `store(content=, user_id=, source=, metadata=)` and `delete(memory_id)`;
- the retriever: `retrieve(query=, user_id=, k=, rerank=)`;
- the meta object: `get_user_state(user_id)`.

`delete` should raise `MemoryNotFoundError` for a missing memory, which
gives a 404 response.

`engram.mcp_tools.ToolServer` takes the same three objects.

- `serve_stdio` reads newline-delimited JSON-RPC until end of input.
- `handle_message` and `call_tool` can be used directly.

The tools are `store_memory`, `retrieve_context`, `get_user_state` and
`erase_memory`. Each also has aliases:

- `write_memory` and `remember`
- `read_memory` and `recall`
- `user_state` and `status`
- `forget`

## What the package does not do

- It has no storage. There is no database or vector store, and no ingestor,
  retriever or user-state implementation. `Server` and `ToolServer` only
  work with objects you supply.
- It has no graph store for expanding related chunks.
- It installs no command-line program. The command handlers are Python
  functions to call from your own code.
- It has no in-process ONNX embedding. `ONNXEmbedder` always raises
  `ONNXEmbedNotBuiltError`, so use `OllamaEmbedder` instead.