from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from dex_clients.src.informer import EventHandler, ResourceInformer
from dex_clients.src.kube import WatchTarget
from dex_clients.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

InformerFactory = Callable[..., ResourceInformer]


class WatchSupervisor:
    """Owns one watch thread per (kind, apiVersion) target.

    Targets of the same kind share one handler, so every Ingress surface
    feeds a single reconciler. ``stop()`` is the only shutdown signal: it
    sets the shared stop event and interrupts every open watch stream. A
    loop that returns without a stop request (RBAC denial or a crash) stops
    the whole supervisor and sets ``failed``.
    """

    def __init__(
        self,
        dynamic_client: Any,
        targets: list[WatchTarget],
        handlers: Mapping[str, EventHandler],
        resync_seconds: int = 1800,
        informer_factory: InformerFactory = ResourceInformer,
    ) -> None:
        missing = sorted({target.kind for target in targets} - set(handlers))
        if missing:
            raise ValueError(f"no handler registered for kind(s): {', '.join(missing)}")

        self.stop_event = threading.Event()
        self.informers: list[ResourceInformer] = [
            informer_factory(
                resource=dynamic_client.resources.get(
                    api_version=target.api_version, kind=target.kind
                ),
                handler=handlers[target.kind],
                kind=target.kind,
                api_version=target.api_version,
                label_selector=target.label_selector,
                resync_seconds=resync_seconds,
            )
            for target in targets
        ]
        self._threads: list[threading.Thread] = []
        self.failed = False

    def start(self) -> None:
        METRICS.watched_surfaces.set(len(self.informers))
        for informer in self.informers:
            thread = threading.Thread(
                target=self._run_informer,
                args=(informer,),
                name=f"watch-{informer.kind}-{informer.api_version}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
            LOGGER.info("Started watch loop for %s", informer.name)

    def _run_informer(self, informer: ResourceInformer) -> None:
        try:
            informer.run_forever(shutdown_event=self.stop_event)
        except Exception:
            LOGGER.exception("Watch loop for %s crashed", informer.name)
        if not self.stop_event.is_set():
            self.failed = True
            LOGGER.error("Watch loop for %s exited without a stop signal; shutting down", informer.name)
            self.stop()

    @property
    def synced(self) -> bool:
        return all(informer.ready.is_set() for informer in self.informers)

    def stop(self) -> None:
        self.stop_event.set()
        for informer in self.informers:
            informer.request_stop()

    def wait(self) -> None:
        """Block until :meth:`stop` is called, from a signal handler or a failed loop."""
        while not self.stop_event.wait(timeout=1.0):
            pass

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every watch thread to finish; returns False if any is still alive."""
        for thread in self._threads:
            thread.join(timeout=timeout)
        return not any(thread.is_alive() for thread in self._threads)
