"""Document store over a directory of markdown notes with YAML frontmatter.

Document ids are vault-relative POSIX paths such as ``游戏/任务/跑步.md``.
All task and progression state lives in frontmatter; the store owns
serialization so callers only ever hand it structured field updates.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

import yaml

from game.errors import ParseError

logger = logging.getLogger(__name__)

_FRONTMATTER_BOUNDARY = "---"
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*$")


class DocumentNotFoundError(LookupError):
    """Raised when a document id does not resolve to a note."""

    def __init__(self, doc_id: str):
        self.doc_id = doc_id
        super().__init__(f"No such document: {doc_id}")


class DocumentStore(Protocol):
    def read(self, doc_id: str) -> str: ...

    def write(self, doc_id: str, content: str) -> None: ...

    def exists(self, doc_id: str) -> bool: ...

    def list_by_prefix(self, prefix: str) -> list[str]: ...

    def get_metadata(self, doc_id: str) -> dict[str, Any]: ...

    def read_document(self, doc_id: str) -> tuple[dict[str, Any], str]: ...

    def update_metadata(
        self,
        doc_id: str,
        updates: dict[str, Any],
        append_lines: Iterable[str] = (),
        headings: Mapping[str, str] | None = None,
    ) -> dict[str, Any]: ...


def split_frontmatter(content: str, doc_id: str = "") -> tuple[dict[str, Any], str]:
    """Return (metadata, body). Notes without frontmatter have empty metadata."""
    lines = content.splitlines()
    if not lines or lines[0].strip() != _FRONTMATTER_BOUNDARY:
        return {}, content
    try:
        end = next(i for i in range(1, len(lines)) if lines[i].strip() == _FRONTMATTER_BOUNDARY)
    except StopIteration:
        return {}, content

    block = "\n".join(lines[1:end])
    try:
        data = yaml.safe_load(block) if block.strip() else {}
    except yaml.YAMLError as exc:
        raise ParseError(f"Invalid frontmatter: {exc}", doc_id=doc_id) from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError("Frontmatter is not a mapping", doc_id=doc_id)
    body = "\n".join(lines[end + 1 :])
    if content.endswith("\n") and body:
        body += "\n"
    return data, body


def retitle_headings(body: str, headings: Mapping[str, str]) -> str:
    """Rename the first markdown heading whose text starts with each key.

    The heading level is kept. Keys with no matching heading are ignored.
    """
    if not headings:
        return body
    lines = body.split("\n")
    for prefix, title in headings.items():
        for i, line in enumerate(lines):
            match = _HEADING_RE.match(line)
            if match and match.group(2).startswith(prefix):
                lines[i] = f"{match.group(1)} {title}"
                break
    return "\n".join(lines)


def render_document(metadata: dict[str, Any], body: str) -> str:
    if not metadata:
        return body
    fm = yaml.safe_dump(metadata, allow_unicode=True, sort_keys=False, default_flow_style=False)
    return f"{_FRONTMATTER_BOUNDARY}\n{fm}{_FRONTMATTER_BOUNDARY}\n{body}"


class MarkdownVault:
    """Filesystem-backed :class:`DocumentStore`."""

    def __init__(self, root: str | Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, doc_id: str) -> Path:
        rel = doc_id.strip().lstrip("/")
        path = (self._root / rel).resolve()
        root = self._root.resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Document id escapes the vault: {doc_id}")
        return path

    def exists(self, doc_id: str) -> bool:
        return self._path(doc_id).is_file()

    def read(self, doc_id: str) -> str:
        path = self._path(doc_id)
        if not path.is_file():
            raise DocumentNotFoundError(doc_id)
        return path.read_text(encoding="utf-8")

    def write(self, doc_id: str, content: str) -> None:
        """Replace the whole note in one step (temp file + rename)."""
        path = self._path(doc_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".md")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Wrote %s", doc_id)

    def list_by_prefix(self, prefix: str) -> list[str]:
        base = self._path(prefix) if prefix.strip("/") else self._root.resolve()
        if not base.is_dir():
            return []
        root = self._root.resolve()
        ids = []
        for path in sorted(base.rglob("*.md")):
            if path.name.startswith(".tmp-"):
                continue
            ids.append(path.relative_to(root).as_posix())
        return ids

    def read_document(self, doc_id: str) -> tuple[dict[str, Any], str]:
        return split_frontmatter(self.read(doc_id), doc_id=doc_id)

    def get_metadata(self, doc_id: str) -> dict[str, Any]:
        metadata, _body = self.read_document(doc_id)
        return metadata

    def update_metadata(
        self,
        doc_id: str,
        updates: dict[str, Any],
        append_lines: Iterable[str] = (),
        headings: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        """Merge ``updates`` into the frontmatter, optionally retitle headings and
        append body lines, and write the combined result once."""
        metadata, body = self.read_document(doc_id)
        metadata.update(updates)
        if headings:
            body = retitle_headings(body, headings)
        extra = [line for line in append_lines if line]
        if extra:
            if body and not body.endswith("\n"):
                body += "\n"
            body += "\n".join(extra) + "\n"
        self.write(doc_id, render_document(metadata, body))
        return metadata
