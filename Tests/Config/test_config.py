# test_config.py
#
#
# Imports
from pathlib import Path
#
# Third-Party Imports
import pytest
import toml
#
# Local Imports
from feedsync import config
from feedsync.config import (
    deep_merge_dicts, get_channel_parameters, get_db_path, get_setting, load_settings, save_setting_to_config,
)
#
#######################################################################################################################
#
# Functions:


@pytest.fixture(autouse=True)
def reset_config_cache():
    config._CONFIG_CACHE = None
    yield
    config._CONFIG_CACHE = None


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "config.toml"


def test_defaults_when_file_is_missing(config_file):
    settings = load_settings(config_path=config_file, environ={})

    assert get_setting("Sync", "page_size", settings=settings) == 20
    assert get_setting("Sync", "database_insertion", settings=settings) is True
    assert get_setting("Database", "enable_fts", settings=settings) is True
    assert get_setting("Logging", "log_backup_count", settings=settings) == 5
    assert get_setting("Nope", "missing", "fallback", settings=settings) == "fallback"


def test_user_file_is_merged_over_defaults(config_file):
    config_file.write_text('[Sync]\npage_size = 50\n\n[Channels."1234"]\ninclude_deleted = 0\n', encoding="utf-8")

    settings = load_settings(config_path=config_file, environ={})

    assert get_setting("Sync", "page_size", settings=settings) == 50
    assert get_setting("Sync", "max_batch_load_from_disk", settings=settings) == 40
    assert get_channel_parameters(settings) == {"1234": {"include_deleted": 0}}


def test_malformed_file_falls_back_to_defaults(config_file):
    config_file.write_text("[Sync\npage_size = ", encoding="utf-8")
    settings = load_settings(config_path=config_file, environ={})
    assert get_setting("Sync", "page_size", settings=settings) == 20


def test_environment_overrides(config_file):
    settings = load_settings(config_path=config_file, environ={
        "FEEDSYNC_API_URL": "https://example.test/api",
        "FEEDSYNC_API_TOKEN": "tok",
        "FEEDSYNC_DB_PATH": ":memory:",
    })

    assert get_setting("API", "base_url", settings=settings) == "https://example.test/api"
    assert get_setting("API", "token", settings=settings) == "tok"
    assert get_db_path(settings) == ":memory:"


def test_default_path_results_are_cached(monkeypatch, config_file):
    monkeypatch.setattr(config, "DEFAULT_CONFIG_PATH", config_file)
    first = load_settings()
    assert load_settings() is first
    assert load_settings(force_reload=True) is not first


def test_get_db_path_expands_user(config_file):
    settings = {"Database": {"path": "~/feeds/cache.db"}}
    assert get_db_path(settings) == (Path.home() / "feeds" / "cache.db").resolve()


def test_save_setting_keeps_other_values(config_file):
    config_file.write_text('[API]\ntoken = "keep-me"\n', encoding="utf-8")

    assert save_setting_to_config("Sync", "page_size", 30, config_path=config_file) is True

    saved = toml.load(config_file)
    assert saved == {"API": {"token": "keep-me"}, "Sync": {"page_size": 30}}
    assert get_setting("Sync", "page_size", settings=load_settings(config_path=config_file, environ={})) == 30


def test_save_setting_reports_unwritable_path(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("", encoding="utf-8")
    assert save_setting_to_config("Sync", "page_size", 30, config_path=blocker / "config.toml") is False


def test_channels_table_must_be_a_table():
    assert get_channel_parameters({"Channels": "oops"}) == {}


def test_deep_merge_does_not_mutate_inputs():
    base = {"a": {"b": 1, "c": 2}}
    update = {"a": {"b": 3}, "d": 4}

    merged = deep_merge_dicts(base, update)

    assert merged == {"a": {"b": 3, "c": 2}, "d": 4}
    assert base == {"a": {"b": 1, "c": 2}}

#
# End of test_config.py
#######################################################################################################################
