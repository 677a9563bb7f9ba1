from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from dex_clients.src.annotations import (
    ClientIntent,
    Misconfigured,
    NotOptedIn,
    client_id_of,
    extract,
)
from dex_clients.src.metrics import METRICS
from dex_clients.src.registry import RegistrationOutcome, RegistrationResult


class ProjectionError(ValueError):
    """Raised when a watch delivers an object the reconciler cannot interpret."""


@dataclass(frozen=True)
class WatchedResourceRef:
    """Kind-agnostic view of a watched object: just enough to reconcile it."""

    kind: str
    name: str
    namespace: str
    annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


Projection = Callable[[Any], WatchedResourceRef]


class Registry(Protocol):
    def create(self, intent: ClientIntent) -> RegistrationResult: ...

    def delete(self, client_id: str) -> RegistrationResult: ...


def make_projection(kind: str) -> Projection:
    """Return a projection accepting raw Kubernetes objects of *kind* only.

    Objects arrive as plain dicts from the dynamic watch. ``apiVersion`` is
    ignored so every Ingress surface shares the same projection.
    """

    def project(obj: Any) -> WatchedResourceRef:
        if not isinstance(obj, Mapping):
            raise ProjectionError(f"expected a {kind} mapping, got {type(obj).__name__}")
        observed_kind = obj.get("kind")
        if observed_kind != kind:
            raise ProjectionError(f"expected kind {kind}, got {observed_kind!r}")

        metadata = obj.get("metadata")
        if not isinstance(metadata, Mapping) or not metadata.get("name"):
            raise ProjectionError(f"{kind} object has no metadata.name")

        raw_annotations = metadata.get("annotations") or {}
        if not isinstance(raw_annotations, Mapping):
            raise ProjectionError(f"{kind} {metadata['name']} has malformed annotations")

        return WatchedResourceRef(
            kind=kind,
            name=str(metadata["name"]),
            namespace=str(metadata.get("namespace") or ""),
            annotations={
                str(k): ("" if v is None else str(v)) for k, v in raw_annotations.items()
            },
        )

    return project


_OUTCOME_LEVELS = {
    RegistrationOutcome.CREATED: logging.INFO,
    RegistrationOutcome.DELETED: logging.INFO,
    RegistrationOutcome.ALREADY_EXISTED: logging.WARNING,
    RegistrationOutcome.NOT_FOUND: logging.WARNING,
    RegistrationOutcome.TRANSPORT_FAILED: logging.ERROR,
}


class Reconciler:
    """Turns lifecycle callbacks for one resource kind into Dex registry calls.

    The same instance may be fed by several watch loops (one per Ingress API
    surface), so it holds no per-object state. An update is handled as
    delete(old) followed by add(new).

    Every callback returns the :class:`RegistrationResult` of the registry
    call it made, or ``None`` when the event required no call. Soft
    failures and transport errors are logged and returned, never raised.
    """

    def __init__(
        self,
        kind: str,
        registry: Registry,
        projection: Projection | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.registry = registry
        self.projection = projection or make_projection(kind)
        self.logger = logger or logging.getLogger(__name__)

    def _project(self, obj: Any, event: str) -> WatchedResourceRef | None:
        try:
            return self.projection(obj)
        except ProjectionError as exc:
            self.logger.error("Ignoring %s event on %s watch: %s", event, self.kind, exc)
            METRICS.skipped_total.labels(kind=self.kind, reason="type_mismatch").inc()
            return None

    def _record(self, ref: WatchedResourceRef, operation: str, result: RegistrationResult) -> None:
        METRICS.registrations_total.labels(
            kind=self.kind,
            operation=operation,
            outcome=result.outcome.value,
        ).inc()
        if not result.ok:
            self.logger.error(
                "Dex gRPC: failed to %s client %s for %s %s: %s; waiting for next resync",
                operation,
                result.client_id,
                ref.kind,
                ref.key,
                result.detail,
            )
            return
        self.logger.log(
            _OUTCOME_LEVELS[result.outcome],
            "Dex gRPC: %s client %s for %s %s: %s",
            operation,
            result.client_id,
            ref.kind,
            ref.key,
            result.outcome.value,
        )

    def on_add(self, obj: Any) -> RegistrationResult | None:
        ref = self._project(obj, "add")
        if ref is None:
            return None

        intent = extract(ref.annotations)
        if isinstance(intent, NotOptedIn):
            self.logger.debug("Ignoring %s %s - not opted in", ref.kind, ref.key)
            METRICS.skipped_total.labels(kind=self.kind, reason="not_opted_in").inc()
            return None
        if isinstance(intent, Misconfigured):
            self.logger.warning(
                "Ignoring %s %s - missing or empty annotation %s",
                ref.kind,
                ref.key,
                intent.missing_key,
            )
            METRICS.skipped_total.labels(kind=self.kind, reason="misconfigured").inc()
            return None

        self.logger.info(
            "Registering client %s (%s) for %s %s with redirect URIs %s",
            intent.client_id,
            intent.name,
            ref.kind,
            ref.key,
            ", ".join(intent.redirect_uris),
        )
        result = self.registry.create(intent)
        self._record(ref, "create", result)
        return result

    def on_delete(self, obj: Any) -> RegistrationResult | None:
        ref = self._project(obj, "delete")
        if ref is None:
            return None

        client_id = client_id_of(ref.annotations)
        if client_id is None:
            self.logger.debug("Ignoring deletion of %s %s - no client id", ref.kind, ref.key)
            METRICS.skipped_total.labels(kind=self.kind, reason="not_opted_in").inc()
            return None

        self.logger.info("Deleting client %s for %s %s", client_id, ref.kind, ref.key)
        result = self.registry.delete(client_id)
        self._record(ref, "delete", result)
        return result

    def on_update(
        self, old: Any, new: Any
    ) -> tuple[RegistrationResult | None, RegistrationResult | None]:
        return self.on_delete(old), self.on_add(new)
