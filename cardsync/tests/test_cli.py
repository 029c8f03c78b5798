"""
Tests for the cardsync command-line interface.
"""
import json

import pytest
from click.testing import CliRunner

from cardsync.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, sqlite_url):
    def _invoke(*args):
        return runner.invoke(cli, ["--db", sqlite_url, *args])

    return _invoke


class TestCli:
    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ["add-card", "toggle-subtask", "log-session", "list-cards"]:
            assert command in result.output

    def test_init_db(self, invoke):
        result = invoke("init-db")

        assert result.exit_code == 0, result.output
        assert "Tables created." in result.output

    def test_card_lifecycle(self, invoke):
        assert invoke("create-list", "todo", "--title", "To do").exit_code == 0

        result = invoke("add-card", "todo", "Buy milk", "--id", "c1", "--estimate", "2")
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "c1"

        result = invoke("add-subtask", "c1", "  wash bottle ")
        assert result.exit_code == 0, result.output
        sub_task_id = result.output.strip().splitlines()[-1]

        result = invoke("toggle-subtask", "c1", sub_task_id)
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "done"

        invoke("log-session", "c1", "1.5", "--session-id", "s1")
        result = invoke("log-session", "c1", "0.5", "--session-id", "s2")
        assert result.output.strip() == "c1: 2h spent"

        result = invoke("rename", "c1", "Buy oat milk")
        assert result.exit_code == 0, result.output

        result = invoke("show", "c1")
        assert result.exit_code == 0, result.output
        assert "c1  Buy oat milk" in result.output
        assert "2h spent / 2h estimated" in result.output
        assert f"[x] {sub_task_id}  wash bottle" in result.output

        result = invoke("list-cards", "--list", "todo", "--json")
        docs = json.loads(result.output)
        assert [d["_id"] for d in docs] == ["c1"]
        assert docs[0]["sessionIds"] == ["s1", "s2"]

        result = invoke("delete-card", "c1", "todo")
        assert result.exit_code == 0, result.output
        assert "Deleted c1" in result.output

        assert "No cards." in invoke("list-cards").output
        assert invoke("list-cards", "--list", "todo", "--json").output.strip() == "[]"

    def test_unknown_card(self, invoke):
        result = invoke("show", "missing")

        assert result.exit_code == 1
        assert "Card 'missing' not found" in result.output

    def test_unknown_list(self, invoke):
        result = invoke("list-cards", "--list", "missing")

        assert result.exit_code == 1
        assert "List 'missing' not found" in result.output

    def test_negative_hours_rejected(self, invoke):
        invoke("create-list", "todo")
        invoke("add-card", "todo", "Card", "--id", "c1")

        result = invoke("log-session", "c1", "--", "-1")

        assert result.exit_code == 2
        assert "non-negative" in result.output
        assert "0h spent" in invoke("show", "c1").output

    @pytest.mark.parametrize("estimate", ["-1", "nan"])
    def test_bad_estimate_adds_nothing(self, invoke, estimate):
        invoke("create-list", "todo")

        result = invoke("add-card", "todo", "Card", "--id", "c1", f"--estimate={estimate}")

        assert result.exit_code == 2
        shown = invoke("show", "c1")
        assert shown.exit_code == 1
        assert "Card 'c1' not found" in shown.output
        assert invoke("list-cards", "--list", "todo", "--json").output.strip() == "[]"

    def test_duplicate_card_id(self, invoke):
        invoke("create-list", "todo")
        invoke("add-card", "todo", "Card", "--id", "c1")

        result = invoke("add-card", "todo", "Again", "--id", "c1")

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_blank_subtask_title(self, invoke):
        invoke("create-list", "todo")
        invoke("add-card", "todo", "Card", "--id", "c1")

        result = invoke("add-subtask", "c1", "   ")

        assert result.exit_code == 2
