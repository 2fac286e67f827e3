from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import CustomObjectsApi

from tagger.src.context import Context
from tagger.src.informer import Informer
from tagger.src.kube import patch_tag_generation, patch_tag_status
from tagger.src.registry import RegistryClient, normalize_reference


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class TagService:
    """Imports Tags and bumps their generation when a registry reports a push.

    This is the production implementation of both collaborator interfaces:
    ``update`` for the queue-driven controller and
    ``new_generation_for_image_ref`` for the webhook receivers.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        tag_informer: Informer,
        registry: RegistryClient,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.custom_api = custom_api
        self.tag_informer = tag_informer
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def update(self, ctx: Context, tag: dict[str, Any]) -> None:
        """Import ``spec.from`` for ``spec.generation`` unless already imported.

        ``status.generation`` only moves forward and ``status.references``
        keeps one entry per generation, newest first.  A failed import is
        recorded in ``status.lastImportAttempt`` before the error propagates
        so operators can see why a Tag is stuck.
        """
        metadata = tag.get("metadata") or {}
        namespace, name = metadata.get("namespace", ""), metadata.get("name", "")
        spec = tag.get("spec") or {}
        status = tag.get("status") or {}

        desired = int(spec.get("generation") or 0)
        current = int(status.get("generation") or 0)
        references = list(status.get("references") or [])

        if desired < current:
            self.logger.warning(
                "Tag %s/%s spec.generation %d is behind status.generation %d; ignoring",
                namespace,
                name,
                desired,
                current,
            )
            return

        if any(int(ref.get("generation", -1)) == desired for ref in references):
            if desired > current:
                status["generation"] = desired
                patch_tag_status(self.custom_api, namespace, name, status)
            return

        ctx.raise_if_done()
        source = spec.get("from") or ""
        try:
            if not source:
                raise ValueError("spec.from is empty")
            image_reference = self.registry.resolve(source, timeout=ctx.remaining())
        except Exception as exc:
            status["lastImportAttempt"] = {
                "when": self.now_fn(),
                "succeed": False,
                "reason": str(exc),
            }
            patch_tag_status(self.custom_api, namespace, name, status)
            raise

        now = self.now_fn()
        references.insert(
            0,
            {
                "generation": desired,
                "from": source,
                "importedAt": now,
                "imageReference": image_reference,
            },
        )
        status["generation"] = desired
        status["references"] = references
        status["lastImportAttempt"] = {"when": now, "succeed": True}

        ctx.raise_if_done()
        patch_tag_status(self.custom_api, namespace, name, status)
        self.logger.info(
            "Tag %s/%s generation %d imported as %s", namespace, name, desired, image_reference
        )

    def new_generation_for_image_ref(self, ctx: Context, image_ref: str) -> None:
        """Bump ``spec.generation`` on every Tag whose ``spec.from`` is *image_ref*.

        Tags whose ``spec.generation`` is already ahead of their status have
        an import pending and are left alone.  Every matching Tag is tried
        even when one fails; failures are raised together at the end.
        """
        target = normalize_reference(image_ref)
        errors: list[str] = []
        matched = 0

        for tag in self.tag_informer.list():
            ctx.raise_if_done()
            spec = tag.get("spec") or {}
            source = spec.get("from") or ""
            try:
                if not source or normalize_reference(source) != target:
                    continue
            except ValueError:
                continue

            matched += 1
            metadata = tag.get("metadata") or {}
            namespace, name = metadata.get("namespace", ""), metadata.get("name", "")
            status = tag.get("status") or {}
            next_generation = int(status.get("generation") or 0) + 1
            if int(spec.get("generation") or 0) >= next_generation:
                continue

            try:
                patch_tag_generation(self.custom_api, namespace, name, next_generation)
                self.logger.info(
                    "Tag %s/%s moved to generation %d after push of %s",
                    namespace,
                    name,
                    next_generation,
                    image_ref,
                )
            except Exception as exc:
                errors.append(f"{namespace}/{name}: {exc}")

        if not matched:
            self.logger.info("No tags reference %s", image_ref)
        if errors:
            raise RuntimeError(f"failed to update tags for {image_ref}: {'; '.join(errors)}")
