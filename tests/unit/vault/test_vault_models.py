"""Tests for frontmatter decoding into tasks, entities and reward rules."""

from datetime import date, datetime

import pytest

from game.errors import ParseError
from vault.models import (
    EntityKind,
    ProgressionEntity,
    RewardKind,
    RewardRule,
    Task,
    TaskStatus,
    format_timestamp,
    parse_reward_table,
    parse_timestamp,
    table_rows_from_body,
)


class TestTimestamps:
    def test_formats(self):
        expected = datetime(2024, 3, 1, 8, 30, 0)
        assert parse_timestamp("2024-03-01 08:30:00") == expected
        assert parse_timestamp("2024-03-01 08:30") == expected
        assert parse_timestamp("2024/03/01 08:30") == expected
        assert parse_timestamp("2024-03-01T08:30:00") == expected

    def test_yaml_values(self):
        assert parse_timestamp(datetime(2024, 3, 1, 8, 30, 0, 1234)) == datetime(2024, 3, 1, 8, 30, 0)
        assert parse_timestamp(date(2024, 3, 1)) == datetime(2024, 3, 1)

    def test_empty_is_absent(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("   ") is None

    def test_garbage_raises(self):
        with pytest.raises(ParseError):
            parse_timestamp("next tuesday", "下一次刷新时间")

    def test_format(self):
        assert format_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02 03:04:05"
        assert format_timestamp(None) == ""


class TestTask:
    def test_from_frontmatter_full(self):
        task = Task.from_frontmatter(
            "游戏/任务/跑步.md",
            {
                "uuid": "run-1",
                "任务状态": "已完成",
                "完成次数": 4,
                "刷新方式": "固定间隔",
                "刷新间隔": "3天",
                "刷新间隔起算时间": "上一次完成时间",
                "下一次刷新时间": "2024-01-04 10:00:00",
                "完成时间": "2024-01-01 10:00:00",
                "奖励": [{"次数": "每1次", "项目": "经验值", "值": 100}],
            },
        )
        assert task.uuid == "run-1"
        assert task.title == "跑步"
        assert task.status is TaskStatus.COMPLETED
        assert task.is_completed
        assert task.completion_count == 4
        assert task.refresh.mode == "固定间隔"
        assert task.refresh.interval == "3天"
        assert task.next_due_at == datetime(2024, 1, 4, 10, 0, 0)
        assert task.last_completed_at == datetime(2024, 1, 1, 10, 0, 0)
        assert task.current_cycle_start is None
        rules, errors = task.reward_rules()
        assert errors == []
        assert rules == [RewardRule(1, RewardKind.EXPERIENCE, "", 100)]

    def test_defaults(self):
        task = Task.from_frontmatter("游戏/任务/x.md", {"uuid": "x"})
        assert task.status is TaskStatus.IN_PROGRESS
        assert task.completion_count == 0
        assert task.next_due_at is None
        assert task.reward_rows == []

    def test_missing_uuid(self):
        with pytest.raises(ParseError) as info:
            Task.from_frontmatter("游戏/任务/x.md", {"任务状态": "进行中"})
        assert info.value.doc_id == "游戏/任务/x.md"

    @pytest.mark.parametrize(
        "data",
        [
            {"uuid": "x", "任务状态": "暂停"},
            {"uuid": "x", "完成次数": "many"},
            {"uuid": "x", "完成次数": -1},
            {"uuid": "x", "下一次刷新时间": "soon"},
            {"uuid": "x", "奖励": "lots"},
        ],
    )
    def test_malformed_fields(self, data):
        with pytest.raises(ParseError) as info:
            Task.from_frontmatter("游戏/任务/x.md", data)
        assert info.value.doc_id == "游戏/任务/x.md"

    def test_reward_table_from_body(self):
        body = (
            "# 跑步\n\n"
            "| 次数 | 项目 | 值 |\n"
            "| --- | --- | --- |\n"
            "| 每1次 | 经验值 | 50 |\n"
            "| 每3次 | 属性/体能 | 1 |\n"
            "\n"
            "在 2024/01/01 10:00 完成第1次\n"
        )
        task = Task.from_frontmatter("游戏/任务/跑步.md", {"uuid": "run"}, body)
        rules, errors = task.reward_rules()
        assert errors == []
        assert [r.label for r in rules] == ["经验值", "属性/体能"]
        assert [r.trigger_frequency for r in rules] == [1, 3]

    def test_frontmatter_rows_win_over_body_table(self):
        body = "| 次数 | 项目 | 值 |\n|---|---|---|\n| 每1次 | 经验值 | 50 |\n"
        task = Task.from_frontmatter(
            "游戏/任务/t.md",
            {"uuid": "t", "奖励": [{"次数": "每2次", "项目": "资源/金币", "值": 5}]},
            body,
        )
        rules, _ = task.reward_rules()
        assert rules == [RewardRule(2, RewardKind.RESOURCE, "金币", 5)]

    def test_lifecycle_fields(self):
        task = Task(
            doc_id="游戏/任务/t.md",
            uuid="t",
            status=TaskStatus.COMPLETED,
            completion_count=2,
            next_due_at=datetime(2024, 1, 2, 8, 0, 0),
        )
        assert task.lifecycle_fields() == {
            "任务状态": "已完成",
            "完成次数": 2,
            "本次刷新时间": "",
            "下一次刷新时间": "2024-01-02 08:00:00",
            "完成时间": "",
        }


class TestRewardRule:
    @pytest.mark.parametrize(
        "row,expected",
        [
            ({"次数": "每1次", "项目": "经验值", "值": 100}, RewardRule(1, RewardKind.EXPERIENCE, "", 100)),
            ({"次数": "3", "项目": "属性/体能", "值": "2"}, RewardRule(3, RewardKind.ATTRIBUTE, "体能", 2)),
            ({"次数": "每5次", "项目": "资源/金币", "值": -20}, RewardRule(5, RewardKind.RESOURCE, "金币", -20)),
            ({"次数": "每2次", "项目": "技能/数学", "值": 30}, RewardRule(2, RewardKind.SKILL_EXPERIENCE, "数学", 30)),
        ],
    )
    def test_from_row(self, row, expected):
        assert RewardRule.from_row(row) == expected

    @pytest.mark.parametrize(
        "row",
        [
            {"次数": "每0次", "项目": "经验值", "值": 1},
            {"次数": "每次", "项目": "经验值", "值": 1},
            {"次数": "每1次", "项目": "魔法/火球", "值": 1},
            {"次数": "每1次", "项目": "属性/", "值": 1},
            {"次数": "每1次", "项目": "经验值", "值": "lots"},
            {"次数": "每1次", "项目": "经验值"},
            {"raw": "not a row"},
        ],
    )
    def test_malformed_rows(self, row):
        with pytest.raises(ParseError):
            RewardRule.from_row(row)

    def test_fires_on_multiples(self):
        rule = RewardRule(3, RewardKind.ATTRIBUTE, "体能", 1)
        assert [n for n in range(1, 10) if rule.fires_on(n)] == [3, 6, 9]

    def test_bad_rows_dropped_but_reported(self):
        rules, errors = parse_reward_table(
            [
                {"次数": "每1次", "项目": "经验值", "值": 10},
                {"次数": "每1次", "项目": "未知", "值": 10},
            ]
        )
        assert len(rules) == 1
        assert len(errors) == 1


def test_table_rows_stop_at_first_table():
    body = "| a | b |\n|---|---|\n| 1 | 2 |\n\ntext\n\n| c | d |\n|---|---|\n| 3 | 4 |\n"
    assert table_rows_from_body(body) == [{"a": "1", "b": "2"}]


class TestProgressionEntity:
    def test_character_defaults(self):
        entity = ProgressionEntity.from_frontmatter(EntityKind.CHARACTER, "character", {})
        assert entity.level == 1
        assert entity.current_experience == 0
        assert entity.experience_threshold == 1000
        assert entity.threshold_increment == 1000

    def test_skill_reads_its_own_keys(self):
        entity = ProgressionEntity.from_frontmatter(
            EntityKind.SKILL, "数学", {"当前经验": 40, "等级": 3, "升级需要经验": 300, "经验值": 999}
        )
        assert (entity.level, entity.current_experience, entity.experience_threshold) == (3, 40, 300)
        assert entity.threshold_increment == 100
        assert entity.to_frontmatter() == {"当前经验": 40, "等级": 3, "升级需要经验": 300}

    def test_out_of_range(self):
        with pytest.raises(ParseError):
            ProgressionEntity.from_frontmatter(EntityKind.SKILL, "数学", {"升级需要经验": 0})
