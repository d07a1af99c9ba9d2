"""Prompt templates for the continuation workflow, compaction and completion.

Templates are markdown files named like ``continuation_phase_draft.md``.
A writer can shadow any packaged template by dropping a file with the same
name into ``<project>/.draftsmith/instructions/`` or
``~/.draftsmith/instructions/``; the project copy wins.
"""

from __future__ import annotations

import re
from importlib import resources
from pathlib import Path
from typing import Any

from draftsmith.logging import get_logger

log = get_logger(__name__)

_PERSONAL_DIR = Path("~/.draftsmith/instructions")
_TEMPLATE_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]+\.md$")


class _KeepUnknown(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Resolve a template name through project, personal and packaged layers."""

    def __init__(
        self,
        project_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.project_dir = (
            Path(project_dir).expanduser() / ".draftsmith" / "instructions" if project_dir is not None else None
        )
        self.personal_dir = Path(personal_dir if personal_dir is not None else _PERSONAL_DIR).expanduser()
        self._cache: dict[str, str] = {}

    def search_path(self) -> list[Path]:
        dirs = [self.personal_dir]
        if self.project_dir is not None:
            dirs.insert(0, self.project_dir)
        return dirs

    def _read(self, name: str) -> str:
        for directory in self.search_path():
            candidate = directory / name
            if candidate.is_file():
                log.debug("Using instruction override", template=name, path=str(candidate))
                return candidate.read_text(encoding="utf-8")
        packaged = resources.files("draftsmith").joinpath("instructions", name)
        if not packaged.is_file():
            raise FileNotFoundError(f"Instruction template not found: {name}")
        return packaged.read_text(encoding="utf-8")

    def load(self, name: str) -> str:
        if not _TEMPLATE_NAME_RE.match(name):
            raise ValueError(f"Invalid instruction template name: {name!r}")
        if name not in self._cache:
            self._cache[name] = self._read(name).strip()
        return self._cache[name]

    def render(self, name: str, **variables: Any) -> str:
        """Fill ``{placeholders}``; ones without a value are left as written."""
        values = _KeepUnknown({key: str(value) for key, value in variables.items()})
        return self.load(name).format_map(values)

    def clear_cache(self) -> None:
        self._cache.clear()
