"""Handlers for the add, find, rm and status commands."""

from __future__ import annotations

import logging
import os
import stat
import sys
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from engram.client import ApiError, Client
from engram.parse import ParsedFact, Parser, UNTAGGED, read_file_text, split_paragraphs

log = logging.getLogger(__name__)

_TEXT_EXTENSIONS = (".txt", ".md")


@dataclass
class RunConfig:
    """Dependencies for the command handlers."""

    client: Client
    parser: Parser
    user_id: str = ""


def truncate(s: str, n: int) -> str:
    """Shorten ``s`` to at most ``n`` characters, appending "..." when cut."""
    if len(s) <= n:
        return s
    return s[:n] + "..."


def _is_fallback(facts: Sequence[ParsedFact]) -> bool:
    return len(facts) == 1 and facts[0].tags == [UNTAGGED]


def run_add(
    rc: RunConfig,
    raw: str = "",
    file_path: str = "",
    dir_path: str = "",
    dry_run: bool = False,
) -> None:
    """Store facts from text, a file or a directory; ``dry_run`` only prints them."""
    if dir_path:
        _run_add_dir(rc, dir_path, dry_run)
    elif file_path:
        _run_add_file(rc, file_path, dry_run)
    else:
        if not raw:
            raise ValueError("provide text, -f <file>, or -d <dir>")
        _run_add_text(rc, raw, dry_run)


def _run_add_text(rc: RunConfig, raw: str, dry_run: bool) -> None:
    facts = rc.parser.parse(raw)
    if _is_fallback(facts):
        log.warning("ollama unavailable — storing raw text as single untagged fact")
    first_error: Optional[ApiError] = None
    for fact in facts:
        tags = " ".join(fact.tags)
        if dry_run:
            print(f"[dry-run] would store: {truncate(fact.content, 60)} [{tags}]")
            continue
        try:
            resp = rc.client.store(fact.content, fact.source, fact.tags)
        except ApiError as exc:
            print(f"error storing: {truncate(fact.content, 50)}: {exc}")
            if first_error is None:
                first_error = exc
            continue
        status = "stored" if resp.stored else "deduped"
        print(f"{status}: {truncate(fact.content, 50)} [{tags}] id={resp.memory_id[:8]}")
    if first_error is not None:
        raise first_error


def _run_add_file(rc: RunConfig, path: str, dry_run: bool) -> None:
    text = read_file_text(path)
    paragraphs = split_paragraphs(text)
    name = os.path.basename(path)
    total = len(paragraphs)
    print(f"ingesting: {name} — {total} paragraphs")
    stored = 0
    for index, para in enumerate(paragraphs, start=1):
        if dry_run:
            print(f"  [dry-run] paragraph {index}/{total}: {truncate(para, 60)}")
            continue
        try:
            facts = rc.parser.parse(para)
        except Exception as exc:  # any parser backend failure skips the paragraph
            log.warning("parse failed for paragraph %d: %s", index, exc)
            continue
        if _is_fallback(facts):
            log.warning("ollama unavailable — storing paragraph %d as untagged fact", index)
        for fact in facts:
            try:
                resp = rc.client.store(fact.content, fact.source, fact.tags)
            except ApiError as exc:
                log.warning("store failed for %r: %s", truncate(fact.content, 40), exc)
                continue
            if resp.stored:
                stored += 1
        print(f"  [{index}/{total}] {name}: {stored} facts")
    if not dry_run:
        print(f"file complete: {name} — {stored} facts stored from {total} paragraphs")


def _walk_text_files(root: str) -> Iterator[str]:
    """Yield .txt and .md files under ``root`` in lexical order."""
    if not stat.S_ISDIR(os.lstat(root).st_mode):
        if os.path.splitext(root)[1].lower() in _TEXT_EXTENSIONS:
            yield root
        return
    with os.scandir(root) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_text_files(entry.path)
        elif os.path.splitext(entry.name)[1].lower() in _TEXT_EXTENSIONS:
            yield entry.path


def _run_add_dir(rc: RunConfig, directory: str, dry_run: bool) -> None:
    try:
        files = list(_walk_text_files(directory))
    except OSError as exc:
        raise OSError(f'walk dir "{directory}": {exc}') from exc
    print(f"found {len(files)} files in {directory}")
    for path in files:
        try:
            _run_add_file(rc, path, dry_run)
        except (OSError, ValueError) as exc:
            log.warning("file ingest error for %s: %s", path, exc)
    if not dry_run:
        print(f"directory complete: {directory}")


def run_find(rc: RunConfig, query: str, k: int) -> None:
    """Print the memories matching ``query`` with their IDs and scores."""
    resp = rc.client.retrieve(query, k, True)
    for result in resp.results:
        print(f"{result.memory_id[:8]}  {result.score:.3f}  {truncate(result.content, 80)}")
    print(f"retrieved {len(resp.results)} results in {resp.stats.total_ms}ms")


def run_remove(
    rc: RunConfig,
    ids: Sequence[str],
    query: str = "",
    force: bool = False,
    dry_run: bool = False,
) -> None:
    """Delete memories by ID, or those found by a query after confirmation."""
    if ids:
        for memory_id in ids:
            if dry_run:
                print(f"[dry-run] would remove: {memory_id}")
                continue
            try:
                rc.client.delete_memory(memory_id)
            except ApiError as exc:
                print(f"error removing {memory_id}: {exc}")
            else:
                print(f"removed: {truncate(memory_id, 8)}")
        return

    if not query:
        raise ValueError("provide memory IDs or --query")

    resp = rc.client.retrieve(query, 20, False)
    results = resp.results
    if not results:
        print(f"no memories found for query: {query}")
        return

    print(f"found {len(results)} memories:")
    for result in results:
        print(f"  {result.memory_id[:8]}  {result.score:.3f}  {truncate(result.content, 60)}")

    if dry_run:
        print(f"[dry-run] would delete {len(results)} memories")
        return

    if not force:
        print(f"delete {len(results)} memories? [y/N] ", end="", flush=True)
        answer = sys.stdin.readline().lower().strip()
        if answer != "y":
            print("aborted")
            return

    removed = 0
    for result in results:
        try:
            rc.client.delete_memory(result.memory_id)
        except ApiError as exc:
            print(f"error removing {truncate(result.memory_id, 8)}: {exc}")
        else:
            print(f"removed: {truncate(result.memory_id, 8)}")
            removed += 1
    print(f"removed {removed} memories")


def run_status(rc: RunConfig) -> None:
    """Print the user's memory statistics."""
    state = rc.client.state()
    print(f"memories: {state.memory_count}  chunks: {state.chunk_count}")
    print(f"last:     {state.last_memory}")
    if state.top_sources:
        print(f"sources:  {', '.join(state.top_sources)}")