"""Configuration loading from settings.yaml and .env."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv


def load_config(
    config_dir: str | Path | None = None,
) -> dict:
    """Load settings.yaml and .env, return merged config dict."""
    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    config_dir = Path(config_dir)

    # Load .env (silently skip if missing)
    env_path = config_dir / ".env"
    load_dotenv(env_path)

    settings_path = config_dir / "settings.yaml"
    if not settings_path.exists():
        raise FileNotFoundError(f"Config not found: {settings_path}")

    with open(settings_path, encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    vault_dir = os.getenv("LIFEQUEST_VAULT_DIR", "")
    if vault_dir:
        cfg.setdefault("vault", {})["root"] = vault_dir

    history_db = os.getenv("LIFEQUEST_HISTORY_DB", "")
    if history_db:
        cfg.setdefault("storage", {})["history_db"] = history_db

    return cfg


def _md(doc_id: str) -> str:
    return doc_id if doc_id.endswith(".md") else f"{doc_id}.md"


@dataclass(frozen=True)
class VaultLayout:
    """Where the game's notes live inside the vault."""

    tasks_prefix: str = "游戏/任务"
    character_doc: str = "游戏/角色.md"
    skills_prefix: str = "游戏/技能"
    attributes_prefix: str = "游戏/属性"
    resources_prefix: str = "游戏/资源"

    @classmethod
    def from_config(cls, cfg: dict) -> VaultLayout:
        vault_cfg = cfg.get("vault", {})
        defaults = cls()
        return cls(
            tasks_prefix=vault_cfg.get("tasks_prefix", defaults.tasks_prefix).strip("/"),
            character_doc=_md(vault_cfg.get("character_doc", defaults.character_doc)),
            skills_prefix=vault_cfg.get("skills_prefix", defaults.skills_prefix).strip("/"),
            attributes_prefix=vault_cfg.get("attributes_prefix", defaults.attributes_prefix).strip("/"),
            resources_prefix=vault_cfg.get("resources_prefix", defaults.resources_prefix).strip("/"),
        )

    def skill_doc(self, name: str) -> str:
        return _md(f"{self.skills_prefix}/{name}")

    def attribute_doc(self, name: str) -> str:
        return _md(f"{self.attributes_prefix}/{name}")

    def resource_doc(self, name: str) -> str:
        return _md(f"{self.resources_prefix}/{name}")
