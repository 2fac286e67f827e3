from __future__ import annotations

import json
import logging
import os
import re
import signal

from tagger.src.config import load_config
from tagger.src.context import Context
from tagger.src.controller import TagController
from tagger.src.health import start_health_server
from tagger.src.kube import build_clients, build_tag_informer, load_kube_configuration
from tagger.src.metrics import METRICS
from tagger.src.registry import RegistryClient
from tagger.src.runner import CacheSyncError, ControllerGroup
from tagger.src.service import TagService
from tagger.src.webhooks import DockerWebHook, QuayWebHook
from tagger.src.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: wire caches, controllers and webhooks, then run until signalled."""
    configure_logging()
    logger = logging.getLogger(__name__)
    config = load_config()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    logger.info("Starting image tag controller...")

    load_kube_configuration()
    custom_api = build_clients()

    tag_informer = build_tag_informer(
        custom_api, namespace=config.namespace, resync_seconds=config.resync_seconds
    )
    tagsvc = TagService(
        custom_api=custom_api,
        tag_informer=tag_informer,
        registry=RegistryClient(timeout=config.registry_timeout_seconds),
    )
    tag_queue = RateLimitingQueue(
        ItemExponentialFailureRateLimiter(
            base_delay=config.backoff_base_seconds,
            max_delay=config.backoff_max_seconds,
        ),
        name="tag",
    )
    controllers = [
        QuayWebHook(tagsvc, port=config.quay_webhook_port),
        DockerWebHook(tagsvc, port=config.docker_webhook_port),
        TagController(
            tag_informer,
            tagsvc,
            workers=config.workers,
            sync_timeout_seconds=config.sync_timeout_seconds,
            queue=tag_queue,
            max_retries=config.max_retries,
            drain_seconds=config.handler_drain_seconds,
        ),
    ]
    group = ControllerGroup(
        informers=[tag_informer],
        controllers=controllers,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
    )
    health_server = start_health_server(ready=group.ready, port=config.health_port)

    ctx = Context.background()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        ctx.cancel()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        group.run(ctx)
    except CacheSyncError:
        logger.critical("Caches not syncing, exiting")
        raise SystemExit(1) from None
    finally:
        ctx.cancel()
        health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
