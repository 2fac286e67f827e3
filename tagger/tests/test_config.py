from __future__ import annotations

import pytest

from tagger.src.config import ConfigError, TaggerConfig, env_int, load_config


def test_defaults() -> None:
    config = load_config({})

    assert config == TaggerConfig()
    assert config.workers == 10
    assert config.sync_timeout_seconds == 180
    assert config.backoff_base_seconds == 1
    assert config.backoff_max_seconds == 60
    assert config.max_retries == 0
    assert (config.health_port, config.quay_webhook_port, config.docker_webhook_port) == (
        8080,
        8081,
        8082,
    )


def test_values_are_read_from_environment() -> None:
    config = load_config(
        {
            "WATCH_NAMESPACE": " images ",
            "WORKERS": "4",
            "SYNC_TIMEOUT_SECONDS": "30",
            "MAX_RETRIES": "12",
            "HANDLER_DRAIN_SECONDS": "15",
            "DOCKER_WEBHOOK_PORT": "9000",
        }
    )

    assert config.namespace == "images"
    assert config.workers == 4
    assert config.sync_timeout_seconds == 30
    assert config.max_retries == 12
    assert config.handler_drain_seconds == 15
    assert config.docker_webhook_port == 9000


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"WORKERS": "0"}, "WORKERS must be >= 1, got: 0"),
        ({"WORKERS": "many"}, "WORKERS must be an integer"),
        ({"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535, got: 70000"),
        ({"MAX_RETRIES": "-1"}, "MAX_RETRIES must be >= 0, got: -1"),
        (
            {"BACKOFF_BASE_SECONDS": "30", "BACKOFF_MAX_SECONDS": "10"},
            "BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS",
        ),
        ({"QUAY_WEBHOOK_PORT": "8082"}, "HTTP ports must be distinct"),
    ],
)
def test_invalid_values_raise(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(env)


def test_env_int_treats_blank_as_default() -> None:
    assert env_int("WORKERS", 10, env={"WORKERS": "  "}) == 10
