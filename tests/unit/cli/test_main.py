"""Tests for the click entry point."""

from __future__ import annotations

from pathlib import Path

import yaml
from click.testing import CliRunner

from main import main


def _config_dir(tmp_path: Path, vault_root: Path) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    settings = {
        "vault": {"root": str(vault_root)},
        "scheduler": {"check_interval_seconds": 60},
        "storage": {"history_db": str(tmp_path / "history.db")},
    }
    (config_dir / "settings.yaml").write_text(yaml.safe_dump(settings, allow_unicode=True), encoding="utf-8")
    return config_dir


def test_complete_then_list(vault_root: Path, add_task, tmp_path: Path, monkeypatch):
    monkeypatch.delenv("LIFEQUEST_VAULT_DIR", raising=False)
    monkeypatch.delenv("LIFEQUEST_HISTORY_DB", raising=False)
    add_task(
        "跑步",
        {
            "uuid": "run-1",
            "刷新方式": "固定间隔",
            "刷新间隔": "1天",
            "奖励": [{"次数": "每1次", "项目": "经验值", "值": 100}],
        },
    )
    config_dir = str(_config_dir(tmp_path, vault_root))
    runner = CliRunner()

    result = runner.invoke(main, ["--complete", "run-1", "--config-dir", config_dir])
    assert result.exit_code == 0, result.output
    assert "Completed 跑步 (#1)" in result.output
    assert "+ 100 经验值" in result.output

    again = runner.invoke(main, ["--complete", "run-1", "--config-dir", config_dir])
    assert again.exit_code == 1

    listing = runner.invoke(main, ["--list", "--config-dir", config_dir])
    assert listing.exit_code == 0, listing.output
    assert "[已完成] 跑步  x1" in listing.output
    assert "Lv.1  100/1000" in listing.output


def test_no_action(tmp_path: Path):
    result = CliRunner().invoke(main, [])
    assert result.exit_code == 1
    assert "Specify" in result.output


def test_bad_next_due(tmp_path: Path):
    result = CliRunner().invoke(main, ["--task", "x", "--next-due", "someday"])
    assert result.exit_code == 2
