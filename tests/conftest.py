"""Shared fixtures: a throwaway vault with a character and a few stat notes."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from game.config import VaultLayout
from vault.store import MarkdownVault


def write_note(root: Path, doc_id: str, metadata: dict[str, Any], body: str = "") -> str:
    path = root / doc_id
    path.parent.mkdir(parents=True, exist_ok=True)
    fm = yaml.safe_dump(metadata, allow_unicode=True, sort_keys=False)
    path.write_text(f"---\n{fm}---\n{body}", encoding="utf-8")
    return doc_id


@pytest.fixture
def layout() -> VaultLayout:
    return VaultLayout()


@pytest.fixture
def vault_root(tmp_path: Path, layout: VaultLayout) -> Path:
    root = tmp_path / "vault"
    write_note(root, layout.character_doc, {"经验值": 0, "等级": 1, "升级需要经验": 1000})
    write_note(root, layout.skill_doc("数学"), {"当前经验": 0, "等级": 1, "升级需要经验": 100})
    write_note(root, layout.attribute_doc("体能"), {"当前值": 10})
    write_note(root, layout.resource_doc("金币"), {"当前值": 1000})
    return root


@pytest.fixture
def store(vault_root: Path) -> MarkdownVault:
    return MarkdownVault(vault_root)


@pytest.fixture
def add_task(vault_root: Path, layout: VaultLayout):
    """Write a task note under the tasks prefix and return its document id."""

    def _add(name: str, metadata: dict[str, Any], body: str = "") -> str:
        return write_note(vault_root, f"{layout.tasks_prefix}/{name}.md", metadata, body)

    return _add
