"""Turning raw text into structured facts, and splitting files into paragraphs."""

from __future__ import annotations

import abc
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any

import requests

log = logging.getLogger(__name__)

DEFAULT_SOURCE = "conversation"
UNTAGGED = "untagged"
MIN_PARAGRAPH_LEN = 20
MAX_PARAGRAPH_LEN = 2000
SUPPORTED_EXTENSIONS = (".txt", ".md")

SYSTEM_PROMPT = """You are a memory structuring assistant. Given raw text, extract distinct facts and return ONLY a JSON array of objects. Each object must have:
  "content": a single concise fact (one sentence max)
  "tags": array of lowercase strings classifying the fact. Use these conventions:
    - person facts: ["people", "person", "<name>"]
    - relationships: ["people", "relationship", "<name1>", "<name2>"]
    - project/work: ["people", "project", "<name>", "<project>"]
    - preferences: ["preferences", "<category>", "<value>"]
    - architecture decisions: ["architecture", "decisions"]
    - workarounds: ["workarounds", "<tech>"]
  "source": always "conversation"
Split compound statements into separate facts. Never combine unrelated facts into one object.
Return ONLY the JSON array, no other text, no markdown, no explanation."""


@dataclass
class ParsedFact:
    """A single structured memory fact."""

    content: str
    tags: list[str] = field(default_factory=list)
    source: str = ""

    def __str__(self) -> str:
        return f"{self.content} [{', '.join(self.tags)}]"


class Parser(abc.ABC):
    """Converts raw text into structured facts."""

    @abc.abstractmethod
    def parse(self, raw: str) -> list[ParsedFact]:
        """Return the facts found in ``raw``."""


def _nop_parse(raw: str) -> list[ParsedFact]:
    return [ParsedFact(content=raw, tags=[UNTAGGED], source=DEFAULT_SOURCE)]


class NopParser(Parser):
    """Returns the raw text as a single untagged fact."""

    def parse(self, raw: str) -> list[ParsedFact]:
        return _nop_parse(raw)


def _str_field(item: dict[str, Any], key: str) -> str:
    value = item.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} is not a string")
    return value


def _decode_facts(content: str) -> list[ParsedFact]:
    data = json.loads(content)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError("expected a JSON array of facts")
    facts = []
    for item in data:
        if item is None:
            continue
        if not isinstance(item, dict):
            raise ValueError("fact is not a JSON object")
        tags = item.get("tags")
        if tags is None:
            tags = []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ValueError("tags is not an array of strings")
        facts.append(
            ParsedFact(
                content=_str_field(item, "content"),
                tags=list(tags),
                source=_str_field(item, "source"),
            )
        )
    return facts


class OllamaParser(Parser):
    """Asks a local Ollama chat model to structure text; falls back to one untagged fact."""

    def __init__(self, base_url: str, model: str, user_id: str, timeout: float) -> None:
        self.base_url = base_url
        self.model = model
        self.user_id = user_id
        self.timeout = timeout
        self._session = requests.Session()

    def parse(self, raw: str) -> list[ParsedFact]:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": raw},
            ],
            "stream": False,
            "format": "json",
        }
        url = self.base_url.rstrip("/") + "/api/chat"
        try:
            resp = self._session.post(
                url, json=body, timeout=self.timeout if self.timeout > 0 else None
            )
        except requests.RequestException as exc:
            log.warning("ollama parse failed; using raw text as single fact: %s", exc)
            return _nop_parse(raw)

        if resp.status_code != 200:
            log.warning(
                "ollama parse non-200; using raw text as single fact: status=%d",
                resp.status_code,
            )
            return _nop_parse(raw)

        try:
            payload = resp.json()
            if not isinstance(payload, dict):
                raise ValueError("response is not a JSON object")
            message = payload.get("message") or {}
            if not isinstance(message, dict):
                raise ValueError("message is not a JSON object")
            content = message.get("content") or ""
            if not isinstance(content, str):
                raise ValueError("message content is not a string")
        except ValueError as exc:
            log.warning("ollama response decode failed; using raw text: %s", exc)
            return _nop_parse(raw)

        try:
            facts = _decode_facts(content)
        except ValueError as exc:
            log.warning("fact JSON decode failed; using raw text: %s (content=%r)", exc, content)
            return _nop_parse(raw)

        out = []
        for fact in facts:
            if not fact.content.strip() or not fact.tags:
                continue
            if not fact.source:
                fact.source = DEFAULT_SOURCE
            out.append(fact)
        return out or _nop_parse(raw)


def _byte_len(s: str) -> int:
    return len(s.encode("utf-8"))


def _sections(text: str):
    for block in text.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        current: list[str] = []
        for line in block.split("\n"):
            if line.strip().startswith("#") and current:
                section = "".join(current).strip()
                if _byte_len(section) >= MIN_PARAGRAPH_LEN:
                    yield section
                current = []
            current.append(line + "\n")
        section = "".join(current).strip()
        if _byte_len(section) >= MIN_PARAGRAPH_LEN:
            yield section


def split_paragraphs(text: str) -> list[str]:
    """Split text on blank lines and markdown headings.

    Paragraphs shorter than 20 bytes are dropped; those longer than 2000
    bytes are split on ". " sentence boundaries.
    """
    out: list[str] = []
    for section in _sections(text):
        if _byte_len(section) <= MAX_PARAGRAPH_LEN:
            out.append(section)
            continue
        chunk = ""
        for sentence in section.split(". "):
            if chunk and _byte_len(chunk) + _byte_len(sentence) > MAX_PARAGRAPH_LEN:
                out.append(chunk.strip())
                chunk = ""
            chunk += sentence + ". "
        tail = chunk.strip()
        if _byte_len(tail) >= MIN_PARAGRAPH_LEN:
            out.append(tail)
    return out


def read_file_text(path: str | os.PathLike[str]) -> str:
    """Read a ``.txt`` or ``.md`` file; other extensions raise ValueError."""
    ext = os.path.splitext(os.fspath(path))[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(
            f'unsupported file type "{ext}": only .txt and .md are supported'
        )
    with open(path, encoding="utf-8", errors="replace") as fh:
        return fh.read()