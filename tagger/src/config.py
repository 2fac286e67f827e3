from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


@dataclass(frozen=True)
class TaggerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace whose Tags are watched; empty watches all namespaces.
        workers: Maximum number of Tags reconciled at the same time.
        sync_timeout_seconds: Deadline for a single reconcile attempt.
        cache_sync_timeout_seconds: How long startup waits for informer caches.
        resync_seconds: Watch stream length; every cached Tag is requeued after each.
        backoff_base_seconds: First retry delay for a failing Tag.
        backoff_max_seconds: Retry delay cap.
        max_retries: Retries before a key is dropped; ``0`` retries forever.
        handler_drain_seconds: How long shutdown waits for running handlers; ``0`` does not wait.
    """

    namespace: str = ""
    workers: int = 10
    sync_timeout_seconds: int = 180
    cache_sync_timeout_seconds: int = 60
    resync_seconds: int = 60
    backoff_base_seconds: int = 1
    backoff_max_seconds: int = 60
    max_retries: int = 0
    handler_drain_seconds: int = 0
    health_port: int = 8080
    quay_webhook_port: int = 8081
    docker_webhook_port: int = 8082
    registry_timeout_seconds: int = 10


def load_config(env: Mapping[str, str] | None = None) -> TaggerConfig:
    """Build a :class:`TaggerConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE`` (all namespaces), ``WORKERS`` (10),
        ``SYNC_TIMEOUT_SECONDS`` (180), ``CACHE_SYNC_TIMEOUT_SECONDS`` (60),
        ``RESYNC_SECONDS`` (60), ``BACKOFF_BASE_SECONDS`` (1),
        ``BACKOFF_MAX_SECONDS`` (60), ``MAX_RETRIES`` (0),
        ``HANDLER_DRAIN_SECONDS`` (0), ``HEALTH_PORT`` (8080),
        ``QUAY_WEBHOOK_PORT`` (8081), ``DOCKER_WEBHOOK_PORT`` (8082),
        ``REGISTRY_TIMEOUT_SECONDS`` (10).
    """
    values = env if env is not None else os.environ

    backoff_base_seconds = env_int("BACKOFF_BASE_SECONDS", 1, minimum=1, env=values)
    backoff_max_seconds = env_int("BACKOFF_MAX_SECONDS", 60, minimum=1, env=values)
    if backoff_max_seconds < backoff_base_seconds:
        raise ConfigError("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")

    ports = {
        name: env_int(name, default, minimum=1, maximum=65535, env=values)
        for name, default in (
            ("HEALTH_PORT", 8080),
            ("QUAY_WEBHOOK_PORT", 8081),
            ("DOCKER_WEBHOOK_PORT", 8082),
        )
    }
    if len(set(ports.values())) != len(ports):
        raise ConfigError(f"HTTP ports must be distinct, got: {ports}")

    return TaggerConfig(
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        workers=env_int("WORKERS", 10, minimum=1, env=values),
        sync_timeout_seconds=env_int("SYNC_TIMEOUT_SECONDS", 180, minimum=1, env=values),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1, env=values
        ),
        resync_seconds=env_int("RESYNC_SECONDS", 60, minimum=1, env=values),
        backoff_base_seconds=backoff_base_seconds,
        backoff_max_seconds=backoff_max_seconds,
        max_retries=env_int("MAX_RETRIES", 0, minimum=0, env=values),
        handler_drain_seconds=env_int("HANDLER_DRAIN_SECONDS", 0, minimum=0, env=values),
        health_port=ports["HEALTH_PORT"],
        quay_webhook_port=ports["QUAY_WEBHOOK_PORT"],
        docker_webhook_port=ports["DOCKER_WEBHOOK_PORT"],
        registry_timeout_seconds=env_int("REGISTRY_TIMEOUT_SECONDS", 10, minimum=1, env=values),
    )
