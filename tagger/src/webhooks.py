from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from http import HTTPStatus
from typing import Any, Protocol

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from tagger.src.context import Context
from tagger.src.metrics import METRICS

SHUTDOWN_TIMEOUT_SECONDS = 10
DISCONNECT_POLL_SECONDS = 0.1


class TagGenerationUpdater(Protocol):
    """Starts a new import for every Tag tracking *image_ref*."""

    def new_generation_for_image_ref(self, ctx: Context, image_ref: str) -> None: ...


class WebHookServerError(RuntimeError):
    """Raised when a receiver cannot serve, e.g. its port is already bound."""


class DockerPushData(BaseModel):
    images: list[str] = Field(default_factory=list)
    pushed_at: float = 0
    pusher: str = ""
    tag: str = ""


class DockerRepository(BaseModel):
    comment_count: int = 0
    date_created: float = 0
    description: str = ""
    dockerfile: str = ""
    full_description: str = ""
    is_official: bool = False
    is_private: bool = False
    is_trusted: bool = False
    name: str = ""
    namespace: str = ""
    owner: str = ""
    repo_name: str = ""
    repo_url: str = ""
    star_count: int = 0
    status: str = ""


class DockerPushPayload(BaseModel):
    """Body Docker Hub sends whenever a new push happens to a repository."""

    callback_url: str = ""
    push_data: DockerPushData = Field(default_factory=DockerPushData)
    repository: DockerRepository = Field(default_factory=DockerRepository)

    def is_valid(self) -> bool:
        return bool(self.push_data.tag and self.repository.name and self.repository.namespace)

    def image_references(self) -> list[str]:
        return [
            f"docker.io/{self.repository.namespace}/{self.repository.name}:{self.push_data.tag}"
        ]


class QuayPushPayload(BaseModel):
    """Body of a Quay "Push to Repository" notification."""

    repository: str = ""
    namespace: str = ""
    name: str = ""
    docker_url: str = ""
    homepage: str = ""
    updated_tags: list[str] = Field(default_factory=list)

    def is_valid(self) -> bool:
        return bool(self.namespace and self.name and any(self.updated_tags))

    def image_references(self) -> list[str]:
        return [f"quay.io/{self.namespace}/{self.name}:{tag}" for tag in self.updated_tags if tag]


class WebHook:
    """HTTP receiver for one registry vendor's push notifications.

    Each delivery is parsed, validated and turned into one or more image
    references, and ``tagsvc.new_generation_for_image_ref`` is called for
    each, synchronously inside the request.  Nothing is queued, deduplicated
    or throttled here: every delivery is one immediate call.  Recovery from a
    ``500`` is left to the registry's own redelivery.

    Collaborator calls get a child of the context passed to :meth:`start`,
    cancelled when the request completes or the client disconnects.
    """

    name = "webhook"
    payload_model: type[DockerPushPayload] | type[QuayPushPayload]

    def __init__(
        self,
        tagsvc: TagGenerationUpdater,
        *,
        port: int,
        host: str = "0.0.0.0",  # noqa: S104
        logger: logging.Logger | None = None,
    ) -> None:
        self.tagsvc = tagsvc
        self.host = host
        self.port = port
        self.logger = logger or logging.getLogger(__name__)
        self._appctx = Context.background()
        self.app = self._create_app()

    def _respond(self, status: HTTPStatus) -> PlainTextResponse:
        METRICS.webhook_requests_total.labels(receiver=self.name, status=str(status.value)).inc()
        return PlainTextResponse(status.phrase, status_code=status.value)

    def _parse(self, body: bytes) -> Any:
        try:
            payload = self.payload_model.model_validate(json.loads(body))
        except (ValueError, ValidationError) as exc:
            self.logger.debug("Error unmarshaling %s payload: %s", self.name, exc)
            return None
        if not payload.is_valid():
            self.logger.debug("Invalid %s payload: %s", self.name, payload)
            return None
        return payload

    def _notify(self, ctx: Context, image_refs: list[str]) -> None:
        for image_ref in image_refs:
            ctx.raise_if_done()
            self.logger.info("Received %s update for image: %s", self.name, image_ref)
            self.tagsvc.new_generation_for_image_ref(ctx, image_ref)

    async def _cancel_on_disconnect(self, request: Request, ctx: Context) -> None:
        while not ctx.done():
            if await request.is_disconnected():
                self.logger.info("%s client disconnected, cancelling request", self.name)
                ctx.cancel()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    def _create_app(self) -> FastAPI:
        app = FastAPI(title=self.name, docs_url=None, redoc_url=None, openapi_url=None)

        @app.post("/", response_class=PlainTextResponse)
        async def receive(request: Request) -> PlainTextResponse:
            payload = self._parse(await request.body())
            if payload is None:
                return self._respond(HTTPStatus.BAD_REQUEST)

            image_refs = payload.image_references()
            ctx = self._appctx.with_cancel()
            watcher = asyncio.create_task(self._cancel_on_disconnect(request, ctx))
            try:
                await run_in_threadpool(self._notify, ctx, image_refs)
            except Exception as exc:
                self.logger.error(
                    "Error updating tags by reference %s: %s", ", ".join(image_refs), exc
                )
                return self._respond(HTTPStatus.INTERNAL_SERVER_ERROR)
            finally:
                ctx.cancel()
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
            return self._respond(HTTPStatus.OK)

        return app

    def start(self, ctx: Context) -> None:
        """Serve until *ctx* is cancelled, then shut down gracefully."""
        self._appctx = ctx
        server = uvicorn.Server(
            uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                log_config=None,
                access_log=False,
                timeout_graceful_shutdown=SHUTDOWN_TIMEOUT_SECONDS,
            )
        )

        def _stop_on_cancel() -> None:
            ctx.wait()
            server.should_exit = True

        threading.Thread(target=_stop_on_cancel, name=f"{self.name}-stop", daemon=True).start()
        self.logger.info("%s listening on :%d", self.name, self.port)
        try:
            server.run()
        except SystemExit as exc:
            # uvicorn exits the interpreter when it cannot bind.
            raise WebHookServerError(f"{self.name} failed to serve on :{self.port}") from exc


class DockerWebHook(WebHook):
    """Receives Docker Hub repository webhooks (default port 8082)."""

    name = "docker hub webhook"
    payload_model = DockerPushPayload

    def __init__(self, tagsvc: TagGenerationUpdater, *, port: int = 8082, **kwargs: Any) -> None:
        super().__init__(tagsvc, port=port, **kwargs)


class QuayWebHook(WebHook):
    """Receives Quay repository push notifications (default port 8081)."""

    name = "quay webhook"
    payload_model = QuayPushPayload

    def __init__(self, tagsvc: TagGenerationUpdater, *, port: int = 8081, **kwargs: Any) -> None:
        super().__init__(tagsvc, port=port, **kwargs)
