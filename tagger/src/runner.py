from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Any

from tagger.src.context import Context
from tagger.src.controller import Controller
from tagger.src.informer import wait_for_cache_sync


class CacheSyncError(RuntimeError):
    """Raised when informer caches do not sync before the startup deadline."""


class ControllerGroup:
    """Starts informers, waits for their caches, then runs every controller.

    Controllers only start after every cache reports synced, so no reconcile
    work sees a partial cache.  All controllers share one context; cancelling
    it is the only shutdown path.  A controller that fails is logged and
    left stopped while the others keep running.
    """

    def __init__(
        self,
        informers: Sequence[Any],
        controllers: Sequence[Controller],
        cache_sync_timeout_seconds: float = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self.informers = list(informers)
        self.controllers = list(controllers)
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

    def _run_controller(self, controller: Controller, ctx: Context) -> None:
        self.logger.info("Starting controller for %r", controller.name)
        try:
            controller.start(ctx)
        except Exception:
            self.logger.exception("%r failed", controller.name)
            return
        self.logger.info("%r controller ended", controller.name)

    def run(self, ctx: Context) -> None:
        """Block until *ctx* is cancelled and every controller has returned.

        Raises :class:`CacheSyncError` if the caches do not sync within
        ``cache_sync_timeout_seconds``.
        """
        for informer in self.informers:
            threading.Thread(
                target=informer.run,
                args=(ctx,),
                name=f"{getattr(informer, 'name', 'cache')}-informer",
                daemon=True,
            ).start()

        self.logger.info("Waiting for caches to sync ...")
        if not wait_for_cache_sync(ctx, self.cache_sync_timeout_seconds, *self.informers):
            if ctx.done():
                self.logger.info("Shutdown requested before caches synced")
                return
            raise CacheSyncError(
                f"caches not synced after {self.cache_sync_timeout_seconds}s"
            )
        self.logger.info("Caches in sync, moving on.")
        self.ready.set()

        threads = [
            threading.Thread(
                target=self._run_controller,
                args=(controller, ctx),
                name=f"{controller.name}-controller",
            )
            for controller in self.controllers
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.ready.clear()
