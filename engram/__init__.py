"""Assistant memory building blocks: chunking, retrieval fusion, embedders, HTTP and MCP transports, and an API client."""

__version__ = "0.1.0"