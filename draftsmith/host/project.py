"""File-backed tool host confined to one project directory.

Project layout::

    chapters/index.json     {"chapters": [{id, title, order, created, updated, wordCount}]}
    chapters/<id>.txt       chapter text
    summaries.json          [{chapterId, summary, createdAt}]
    knowledge/              background notes searched by ``rag_search``
"""

import asyncio
import json
import os
import re
import shutil
import time
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import Any

from draftsmith.host import ToolHost
from draftsmith.logging import get_logger
from draftsmith.session import count_words
from draftsmith.tools.registry import (
    AppendArgs,
    GetChapterInfoArgs,
    ListArgs,
    RagSearchArgs,
    ReadArgs,
    SaveSummaryArgs,
    SearchArgs,
    ToolInvocation,
    ToolName,
    ToolRegistry,
    ToolResult,
    WriteArgs,
)

log = get_logger(__name__)

MAX_READ_BYTES = 50 * 1024
MAX_LINE_CHARS = 2000
MAX_LIST_ENTRIES = 100
MAX_SEARCH_MATCHES = 50
RAG_DEFAULT_TOP_K = 5
RAG_CHUNK_CHARS = 800
RAG_CHUNK_OVERLAP = 120

IGNORED_DIRS = frozenset({"node_modules", "target", ".git", ".backup", "dist"})
CHAPTER_INDEX = "chapters/index.json"
SUMMARIES_FILE = "summaries.json"
KNOWLEDGE_DIR = "knowledge"

_CHAPTER_ID_RE = re.compile(r"^chapter_\d+$")
_TERM_RE = re.compile(r"[a-z0-9]+|[\u3400-\u9fff]")


def normalize_chapter_id(value: str) -> str:
    """Accept ``chapter_003`` as-is and bare digits (``3``) as ``chapter_003``."""
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("chapterId is empty")
    if cleaned.startswith("chapter_"):
        if not _CHAPTER_ID_RE.match(cleaned):
            raise ValueError("Invalid chapterId (expected 'chapter_XXX')")
        return cleaned
    if cleaned.isdigit():
        return f"chapter_{int(cleaned):03d}"
    raise ValueError("Invalid chapterId")


def validate_path(root: Path, relative: str) -> Path:
    """Map ``relative`` under ``root``, refusing anything that could escape it.

    The nearest existing ancestor is resolved so a symlink inside the
    project cannot point the result outside the root.
    """
    root = root.resolve()
    candidate = PurePosixPath(relative.replace("\\", "/"))
    if candidate.is_absolute() or re.match(r"^[A-Za-z]:", relative):
        raise ValueError("Absolute paths are not allowed")

    full = root
    for part in candidate.parts:
        if part in ("", "."):
            continue
        if part == "..":
            raise ValueError("Parent directory (..) is not allowed")
        full = full / part

    ancestor = full
    while not ancestor.exists():
        if ancestor == ancestor.parent:
            raise ValueError("Invalid path")
        ancestor = ancestor.parent
    if not ancestor.resolve().is_relative_to(root):
        raise ValueError("Path escapes project directory")
    return full


def _looks_binary(sample: bytes) -> bool:
    if b"\0" in sample:
        return True
    try:
        sample.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte character cut at the sample edge is still text.
        return e.start < len(sample) - 3
    return False


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


def _terms(text: str) -> set[str]:
    return set(_TERM_RE.findall(text.lower()))


def chunk_text(text: str, size: int = RAG_CHUNK_CHARS, overlap: int = RAG_CHUNK_OVERLAP) -> list[str]:
    if not text.strip():
        return []
    if size <= overlap:
        return [text]
    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(len(text), start + size)
        piece = text[start:end]
        if piece.strip():
            chunks.append(piece)
        if end == len(text):
            break
        start = end - overlap
    return chunks


Handler = Callable[[Any], str]


class ProjectToolHost(ToolHost):
    """Run the tool set against files under ``root``.

    Handlers run in a worker thread. Raising ``ValueError`` or ``OSError``
    from a handler turns into a tool error reply. Writes go through
    ``_write_protected``.
    """

    def __init__(
        self,
        root: Path | str,
        chapter_id: str | None = None,
        registry: ToolRegistry | None = None,
    ):
        super().__init__(registry)
        self.root = Path(root).expanduser().resolve()
        self.chapter_id = chapter_id
        self._handlers: dict[ToolName, Handler] = {
            ToolName.READ: self._read,
            ToolName.WRITE: self._write,
            ToolName.APPEND: self._append,
            ToolName.LIST: self._list,
            ToolName.SEARCH: self._search,
            ToolName.GET_CHAPTER_INFO: self._get_chapter_info,
            ToolName.SAVE_SUMMARY: self._save_summary,
            ToolName.RAG_SEARCH: self._rag_search,
        }
        missing = [name.value for name in ToolName if name not in self._handlers]
        if missing:
            raise TypeError(f"ProjectToolHost has no handler for: {', '.join(missing)}")

    def resolve(self, relative: str) -> Path:
        return validate_path(self.root, relative)

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self.root).as_posix()

    async def execute(self, invocation: ToolInvocation) -> ToolResult:
        handler = self._handlers[invocation.name]
        try:
            content = await asyncio.to_thread(handler, invocation.arguments)
        except (ValueError, OSError) as e:
            log.info("Tool failed", tool=invocation.name.value, error=str(e))
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, content=content)

    # -- read-only tools --

    def _read(self, args: ReadArgs) -> str:
        path = self.resolve(args.path)
        if not path.is_file():
            raise ValueError(f"File not found: {args.path}")
        raw = path.read_bytes()
        if _looks_binary(raw[:8192]):
            raise ValueError("Binary file detected")
        try:
            lines = raw.decode("utf-8").splitlines()
        except UnicodeDecodeError:
            raise ValueError("Binary file detected") from None

        offset = args.offset or 0
        if offset < 0:
            offset = max(0, len(lines) + offset)

        output: list[str] = []
        size = 0
        truncated = False
        for index in range(offset, len(lines)):
            if len(output) >= args.limit:
                truncated = True
                break
            line = lines[index]
            if len(line) > MAX_LINE_CHARS:
                line = line[:MAX_LINE_CHARS] + "..."
                truncated = True
            formatted = f"{index + 1:05d}| {line}\n"
            encoded = len(formatted.encode("utf-8"))
            if size + encoded > MAX_READ_BYTES:
                truncated = True
                break
            size += encoded
            output.append(formatted)

        return _dumps({"content": "".join(output), "total_lines": len(lines), "truncated": truncated})

    def _list(self, args: ListArgs) -> str:
        relative = args.path or ""
        path = self.resolve(relative)
        if not path.is_dir():
            raise ValueError(f"'{relative}' is not a directory")

        entries: list[dict[str, Any]] = []
        for entry in sorted(path.iterdir(), key=lambda p: p.name):
            if len(entries) >= MAX_LIST_ENTRIES:
                break
            if entry.name.startswith(".") or entry.is_symlink():
                continue
            is_dir = entry.is_dir()
            if is_dir and entry.name in IGNORED_DIRS:
                continue
            stat = entry.stat()
            entries.append({
                "name": entry.name,
                "is_dir": is_dir,
                "size": 0 if is_dir else stat.st_size,
                "modified": int(stat.st_mtime),
            })
        return _dumps({"entries": entries})

    def _search(self, args: SearchArgs) -> str:
        start = self.resolve(args.path or "")
        if not start.exists():
            raise ValueError(f"Path not found: {args.path}")

        matches: list[dict[str, Any]] = []
        for file_path in self._walk_files(start):
            if len(matches) >= MAX_SEARCH_MATCHES:
                break
            raw = file_path.read_bytes()
            if _looks_binary(raw[:8192]):
                continue
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError:
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if args.query in line:
                    matches.append({"file": self.relative(file_path), "line": number, "content": line})
                    if len(matches) >= MAX_SEARCH_MATCHES:
                        break
        return _dumps({"matches": matches})

    def _walk_files(self, start: Path):
        if start.is_file():
            yield start
            return
        for entry in sorted(start.iterdir(), key=lambda p: p.name):
            if entry.name.startswith(".") or entry.is_symlink():
                continue
            if entry.is_dir():
                if entry.name in IGNORED_DIRS:
                    continue
                yield from self._walk_files(entry)
            elif entry.is_file():
                yield entry

    def _load_chapter_index(self) -> dict[str, Any]:
        path = self.resolve(CHAPTER_INDEX)
        if not path.is_file():
            raise ValueError(f"Missing {CHAPTER_INDEX}")
        try:
            index = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Failed to parse {CHAPTER_INDEX}: {e}") from e
        if not isinstance(index, dict) or not isinstance(index.get("chapters", []), list):
            raise ValueError(f"{CHAPTER_INDEX} must be an object with a \"chapters\" list")
        return index

    def _chapter_entries(self, index: dict[str, Any]) -> list[dict[str, Any]]:
        return [meta for meta in index.get("chapters", []) if isinstance(meta, dict)]

    def _get_chapter_info(self, args: GetChapterInfoArgs) -> str:
        if not self.chapter_id:
            raise ValueError("No chapter selected")
        chapter_id = normalize_chapter_id(self.chapter_id)
        index = self._load_chapter_index()
        for meta in self._chapter_entries(index):
            if meta.get("id") == chapter_id:
                return _dumps({
                    "chapterId": chapter_id,
                    "title": meta.get("title", ""),
                    "path": f"chapters/{chapter_id}.txt",
                    "wordCount": meta.get("wordCount", 0),
                    "updatedAt": meta.get("updated", 0),
                })
        raise ValueError("Chapter not found")

    def _rag_search(self, args: RagSearchArgs) -> str:
        scope = args.path or KNOWLEDGE_DIR
        start = self.resolve(scope)
        if not start.exists():
            return _dumps([])

        query_terms = _terms(args.query)
        if not query_terms:
            return _dumps([])

        hits: list[dict[str, Any]] = []
        for file_path in self._walk_files(start):
            try:
                text = file_path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                continue
            for chunk in chunk_text(text):
                overlap = len(query_terms & _terms(chunk))
                if overlap:
                    hits.append({
                        "path": self.relative(file_path),
                        "score": round(overlap / len(query_terms), 4),
                        "text": chunk,
                    })
        hits.sort(key=lambda hit: hit["score"], reverse=True)
        return _dumps(hits[: args.top_k or RAG_DEFAULT_TOP_K])

    # -- write tools --

    def _backup(self, path: Path) -> Path:
        """Copy an existing file to ``.backup/<millis>/<relative path>``."""
        backup = self.root / ".backup" / str(int(time.time() * 1000)) / self.relative(path)
        backup.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, backup)
        return backup

    def _write_protected(self, path: Path, data: bytes) -> None:
        """Back up ``path``, then swap new bytes in through a sibling temp file.

        On failure the backup is restored, or a file that did not exist
        before is removed, and the error propagates.
        """
        if path.is_dir():
            raise ValueError(f"'{self.relative(path)}' is a directory")
        backup = self._backup(path) if path.exists() else None
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.tmp.{int(time.time() * 1000)}")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError:
            tmp.unlink(missing_ok=True)
            if backup is not None:
                shutil.copy2(backup, path)
            else:
                path.unlink(missing_ok=True)
            log.error("Write failed, previous content kept", path=self.relative(path))
            raise

    def _write_json(self, path: Path, payload: Any) -> None:
        self._write_protected(path, (json.dumps(payload, ensure_ascii=False, indent=2) + "\n").encode("utf-8"))

    def _write(self, args: WriteArgs) -> str:
        path = self.resolve(args.path)
        self._write_protected(path, args.content.encode("utf-8"))
        self._sync_chapter_index(args.path)
        return "File written successfully"

    def _append(self, args: AppendArgs) -> str:
        path = self.resolve(args.path)
        if path.is_dir():
            raise ValueError(f"'{args.path}' is a directory")
        existing = path.read_bytes() if path.exists() else b""
        if existing and not existing.endswith(b"\n"):
            existing += b"\n"
        self._write_protected(path, existing + args.content.encode("utf-8"))
        self._sync_chapter_index(args.path)
        return "Content appended successfully"

    def _sync_chapter_index(self, relative: str) -> None:
        """Refresh ``wordCount``/``updated`` when a chapter file changed.

        The chapter write already succeeded, so index problems are logged
        and never fail the tool call.
        """
        parts = PurePosixPath(relative.replace("\\", "/")).parts
        if len(parts) != 2 or parts[0] != "chapters" or not parts[1].endswith(".txt"):
            return
        chapter_id = parts[1][: -len(".txt")]
        if not _CHAPTER_ID_RE.match(chapter_id):
            return
        index_path = self.resolve(CHAPTER_INDEX)
        if not index_path.is_file():
            return
        try:
            index = self._load_chapter_index()
            for meta in self._chapter_entries(index):
                if meta.get("id") == chapter_id:
                    content = self.resolve(relative).read_text(encoding="utf-8")
                    meta["updated"] = int(time.time())
                    meta["wordCount"] = count_words(content)
                    self._write_json(index_path, index)
                    return
        except (ValueError, OSError) as e:
            log.warning("Chapter index not updated", chapter_id=chapter_id, error=str(e))

    def _save_summary(self, args: SaveSummaryArgs) -> str:
        chapter_id = normalize_chapter_id(args.chapter_id)
        summary = args.summary.strip()
        if not summary:
            raise ValueError("summary is empty")

        path = self.resolve(SUMMARIES_FILE)
        entries: list[Any] = []
        if path.is_file():
            try:
                entries = json.loads(path.read_text(encoding="utf-8")) or []
            except json.JSONDecodeError as e:
                raise ValueError(f"Failed to parse {SUMMARIES_FILE}: {e}") from e
            if not isinstance(entries, list):
                raise ValueError(f"{SUMMARIES_FILE} must be a JSON list")
        entry = {"chapterId": chapter_id, "summary": summary, "createdAt": int(time.time())}
        entries.append(entry)
        self._write_json(path, entries)
        return _dumps(entry)
