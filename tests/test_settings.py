from pathlib import Path

import pytest

from housie.orchestrator.errors import ConfigError
from housie.settings import load_settings


def test_defaults_without_file(tmp_path):
    settings = load_settings(tmp_path / "missing.toml", environ={})
    assert settings.broker.queue == "scraping_queue"
    assert settings.broker.prefetch == 3
    assert settings.jobs.max_retries == 3


def test_file_values_and_env_overrides(tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text(
        "[broker]\nqueue = 'listings'\nprefetch = 5\n\n[jobs]\nmax_retries = 1\n",
        encoding="utf-8",
    )
    settings = load_settings(
        path,
        environ={"RABBITMQ_URL": "amqp://rabbit:5672/", "HOUSIE_MAX_RETRIES": "4", "REDIS_URL": "redis://cache:6379/1"},
    )
    assert settings.broker.queue == "listings"
    assert settings.broker.prefetch == 5
    assert settings.broker.url == "amqp://rabbit:5672/"
    assert settings.jobs.max_retries == 4
    assert settings.status_store.url == "redis://cache:6379/1"


def test_invalid_settings_raise_config_error(tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text("[broker]\nprefetch = 0\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(path, environ={})
    path.write_text("[broker\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(path, environ={})


def test_repository_settings_file_loads():
    settings = load_settings(Path(__file__).resolve().parent.parent / "config" / "settings.toml", environ={})
    assert settings.scrape.prompts_path == Path("config/prompts.yaml")
