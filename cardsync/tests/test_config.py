"""
Tests for cardsync.config module.
"""
import asyncio
from datetime import timedelta

import pytest

from cardsync.commands import CardCommands
from cardsync.config import (
    SyncConfig,
    create_card_sync,
    load_cardsync_toml,
    load_config,
    make_commands_from_config,
)
from cardsync.documents import InMemoryDocumentStore
from cardsync.lists import DocumentListDirectory
from cardsync.sync import PersistStatus


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No CARDSYNC_* variables and no cardsync.toml in the working directory."""
    import os

    for key in list(os.environ):
        if key.startswith("CARDSYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def _write_toml(tmp_path, body: str):
    path = tmp_path / "custom.toml"
    path.write_text(body)
    return str(path)


class TestLoadCardsyncToml:
    def test_no_file_gives_empty_dict(self, clean_env):
        assert load_cardsync_toml() == {}

    def test_explicit_path(self, clean_env, tmp_path):
        path = _write_toml(
            tmp_path,
            '[cardsync]\ndatabase_url = "sqlite+aiosqlite:///x.db"\nmax_retries = 5\n'
            "[other]\nignored = true\n",
        )

        assert load_cardsync_toml(path) == {
            "database_url": "sqlite+aiosqlite:///x.db",
            "max_retries": 5,
        }

    def test_env_var_points_to_file(self, clean_env, tmp_path):
        path = _write_toml(tmp_path, '[cardsync]\nbackoff_strategy = "linear"\n')
        clean_env.setenv("CARDSYNC_CONFIG", path)

        assert load_cardsync_toml() == {"backoff_strategy": "linear"}

    def test_default_file_in_cwd(self, clean_env, tmp_path):
        (tmp_path / "cardsync.toml").write_text("[cardsync]\nenable_otel = true\n")

        assert load_cardsync_toml() == {"enable_otel": True}

    def test_env_overrides_are_typed(self, clean_env, tmp_path):
        path = _write_toml(tmp_path, "[cardsync]\nmax_retries = 5\n")
        clean_env.setenv("CARDSYNC_MAX_RETRIES", "8")
        clean_env.setenv("CARDSYNC_ENABLE_METRICS", "no")
        clean_env.setenv("CARDSYNC_SERIALIZE_PER_CARD", "1")
        clean_env.setenv("CARDSYNC_BACKOFF_MIN_SECONDS", "0.25")
        clean_env.setenv("CARDSYNC_DATABASE_URL", "sqlite+aiosqlite:///env.db")

        assert load_cardsync_toml(path) == {
            "max_retries": 8,
            "enable_metrics": False,
            "serialize_per_card": True,
            "backoff_min_seconds": 0.25,
            "database_url": "sqlite+aiosqlite:///env.db",
        }

    def test_bad_numbers_are_ignored(self, clean_env):
        clean_env.setenv("CARDSYNC_MAX_RETRIES", "many")
        clean_env.setenv("CARDSYNC_BACKOFF_FACTOR", "fast")

        assert load_cardsync_toml() == {}


class TestSyncConfig:
    def test_defaults(self):
        config = SyncConfig()

        assert config.database_url.startswith("sqlite+aiosqlite://")
        assert config.serialize_per_card is True
        assert config.max_retries == 3

    def test_retry_policy(self):
        policy = SyncConfig(
            max_retries=7,
            backoff_strategy="linear",
            backoff_factor=0.5,
            backoff_min_seconds=0.1,
            backoff_max_seconds=2,
        ).retry_policy()

        assert policy.max_retries == 7
        assert policy.backoff_strategy == "linear"
        assert policy.backoff_min == timedelta(seconds=0.1)
        assert policy.backoff_max == timedelta(seconds=2)

    def test_from_mapping_ignores_unknown(self, caplog):
        config = SyncConfig.from_mapping({"max_retries": 1, "nats_url": "nats://x"})

        assert config.max_retries == 1
        assert "nats_url" in caplog.text

    def test_load_config_overrides_win(self, clean_env, tmp_path):
        path = _write_toml(tmp_path, "[cardsync]\nmax_retries = 5\nengine_echo = true\n")

        config = load_config(path, max_retries=0, database_url=None)

        assert config.max_retries == 0
        assert config.engine_echo is True
        assert config.database_url == SyncConfig().database_url


class TestWiring:
    @pytest.mark.asyncio
    async def test_make_commands_from_config(self):
        cards_db = InMemoryDocumentStore()
        lists = DocumentListDirectory(InMemoryDocumentStore())
        await lists.create_list("l1")

        commands = make_commands_from_config(
            SyncConfig(max_retries=0, serialize_per_card=False), cards_db, lists
        )
        issued = await commands.add_card("c1", "l1", "Card")

        assert isinstance(commands, CardCommands)
        assert commands.queue.retry_policy.max_retries == 0
        assert (await issued.persisted()).status is PersistStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_create_card_sync_persists_across_sessions(self, sqlite_url):
        async with create_card_sync(database_url=sqlite_url) as res:
            await res.lists.create_list("todo", "To do")
            await res.commands.fetch_all()
            await res.commands.add_card("c1", "todo", "Buy milk")
            await res.commands.add_sub_task("c1", "wash bottle")
            await res.commands.on_timer_finished("c1", "s1", 1.5)
            # Left in flight: leaving the context drains the queue.
            assert res.metrics is not None

        async with create_card_sync(database_url=sqlite_url) as res:
            state = await res.commands.fetch_all()

            card = state["c1"]
            assert card.title == "Buy milk"
            assert [st.title for st in card.sub_tasks] == ["wash bottle"]
            assert card.session_ids == ["s1"]
            assert card.spent_time_in_hour.actual == 1.5
            assert await res.lists.cards_of("todo") == ["c1"]

    @pytest.mark.asyncio
    async def test_concurrent_add_card_keeps_every_list_reference(self, sqlite_url):
        async with create_card_sync(database_url=sqlite_url) as res:
            await res.lists.create_list("list1")
            await res.commands.fetch_all()

            await asyncio.gather(
                *(res.commands.add_card(f"c{i}", "list1", f"Card {i}") for i in range(5))
            )
            await res.queue.drain()

            expected = [f"c{i}" for i in range(5)]
            assert sorted(await res.lists.cards_of("list1")) == expected
            assert sorted(d["_id"] for d in await res.cards_db.find({})) == expected

    @pytest.mark.asyncio
    async def test_create_card_sync_without_metrics(self, sqlite_url):
        config = SyncConfig(database_url=sqlite_url, enable_metrics=False)

        async with create_card_sync(config) as res:
            assert res.metrics is None
            assert res.store is res.commands.store
