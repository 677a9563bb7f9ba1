from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
from collections.abc import Sequence

from dex_clients.src.config import ConfigError, ControllerConfig, parse_args
from dex_clients.src.health import start_health_server
from dex_clients.src.kube import build_dynamic_client, load_kube_configuration, plan_watch_targets
from dex_clients.src.metrics import METRICS
from dex_clients.src.reconciler import Reconciler
from dex_clients.src.registry import RegistryClient, RegistryConfigError, RegistryUnavailable
from dex_clients.src.supervisor import WatchSupervisor

RUNTIME_VERSION = "0.3.0"
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|client[_-]?secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


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


class RedactingFormatter(logging.Formatter):
    """Plain-text formatter applying the same redaction as :class:`JSONFormatter`."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_sensitive_text(super().format(record))


def configure_logging(log_format: str, log_level: str) -> None:
    handler = logging.StreamHandler()
    if log_format == "text":
        handler.setFormatter(RedactingFormatter(TEXT_LOG_FORMAT))
    else:
        handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def check_registry(registry: RegistryClient, address: str) -> None:
    """Startup connectivity check: exit non-zero if Dex cannot be reached."""
    try:
        server_version = registry.get_version()
    except RegistryUnavailable as exc:
        LOGGER.error("Cannot contact Dex gRPC service at %s: %s", address, exc)
        raise SystemExit(1) from exc
    LOGGER.info("Connected to Dex %s at %s", server_version, address)


def run(settings: ControllerConfig) -> None:
    """Wire Dex, Kubernetes, the watch loops and the health server, then block until shutdown."""
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        registry = RegistryClient.connect(settings.dex_grpc_address, settings.tls)
    except RegistryConfigError as exc:
        LOGGER.error("Invalid Dex gRPC TLS configuration: %s", exc)
        raise SystemExit(1) from exc
    check_registry(registry, settings.dex_grpc_address)

    load_kube_configuration(kubeconfig=settings.kubeconfig, in_cluster=settings.in_cluster)
    dynamic_client = build_dynamic_client()
    targets = plan_watch_targets(settings, dynamic_client)
    if not targets:
        LOGGER.error("Nothing to watch: no enabled kind is served by this cluster")
        raise SystemExit(1)

    handlers = {kind: Reconciler(kind, registry) for kind in {target.kind for target in targets}}
    supervisor = WatchSupervisor(
        dynamic_client=dynamic_client,
        targets=targets,
        handlers=handlers,
        resync_seconds=settings.resync_seconds,
    )

    def _ready() -> bool:
        return supervisor.synced and registry.is_ready()

    health_server = start_health_server(readiness_check=_ready, port=settings.health_port)

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        supervisor.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    supervisor.start()
    supervisor.wait()
    if not supervisor.join(timeout=10):
        LOGGER.warning("Some watch loops did not stop within 10s")

    health_server.shutdown()
    if supervisor.failed:
        LOGGER.error("Controller stopped after a watch loop failed")
        raise SystemExit(1)
    LOGGER.info("Controller stopped")


def main(argv: Sequence[str] | None = None) -> None:
    """Controller entrypoint: parse configuration, configure logging, and run."""
    try:
        settings = parse_args(argv)
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    configure_logging(settings.log_format, settings.log_level)
    run(settings)


if __name__ == "__main__":
    main()
