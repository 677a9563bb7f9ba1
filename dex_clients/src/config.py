from __future__ import annotations

import argparse
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from dex_clients.src.registry import TLSFiles

DEFAULT_LABEL_SELECTOR = "mintel.com/dex-k8s-dynamic-clients=enabled"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration resolved once at startup."""

    in_cluster: bool
    kubeconfig: str | None
    dex_grpc_address: str
    tls: TLSFiles | None
    watch_ingresses: bool
    watch_configmaps: bool
    watch_secrets: bool
    label_selector: str
    resync_seconds: int
    health_port: int
    log_format: str
    log_level: str


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
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


def build_parser(env: Mapping[str, str]) -> argparse.ArgumentParser:
    """Build the CLI; every flag falls back to an environment variable."""
    parser = argparse.ArgumentParser(
        prog="dex-k8s-dynamic-clients",
        description="Create Dex clients from annotations on Ingresses, ConfigMaps and Secrets",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    serve = commands.add_parser("serve", help="Run the controller")

    serve.add_argument(
        "--incluster",
        action="store_true",
        default=parse_bool(env.get("IN_CLUSTER")),
        help="use in-cluster configuration",
    )
    serve.add_argument(
        "--kubeconfig",
        default=env.get("KUBECONFIG", os.path.join(os.path.expanduser("~"), ".kube", "config")),
        help="path to kubeconfig (if not running inside a cluster)",
    )
    serve.add_argument(
        "--dex-grpc-address",
        default=env.get("DEX_GRPC_ADDRESS", "127.0.0.1:5557"),
        help="Dex gRPC address (host:port)",
    )
    serve.add_argument("--ca-crt", default=env.get("DEX_CA_CRT"), help="CA certificate for Dex gRPC")
    serve.add_argument(
        "--client-crt", default=env.get("DEX_CLIENT_CRT"), help="client certificate for Dex gRPC"
    )
    serve.add_argument("--client-key", default=env.get("DEX_CLIENT_KEY"), help="client key for Dex gRPC")
    serve.add_argument(
        "--watch-ingresses",
        action=argparse.BooleanOptionalAction,
        default=parse_bool(env.get("WATCH_INGRESSES"), default=True),
        help="watch Ingresses on every served API version",
    )
    serve.add_argument(
        "--watch-configmaps",
        action=argparse.BooleanOptionalAction,
        default=parse_bool(env.get("WATCH_CONFIGMAPS")),
        help="watch labelled ConfigMaps",
    )
    serve.add_argument(
        "--watch-secrets",
        action=argparse.BooleanOptionalAction,
        default=parse_bool(env.get("WATCH_SECRETS")),
        help="watch labelled Secrets",
    )
    serve.add_argument(
        "--label-selector",
        default=env.get("WATCH_LABEL_SELECTOR", DEFAULT_LABEL_SELECTOR),
        help="label selector scoping ConfigMap and Secret watches",
    )
    serve.add_argument(
        "--resync-seconds",
        type=int,
        default=env_int(env, "RESYNC_SECONDS", 1800, minimum=0),
        help="period between full re-deliveries of cached objects (0 disables)",
    )
    serve.add_argument(
        "--health-port",
        type=int,
        default=env_int(env, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        help="port for /healthz, /readyz and /metrics",
    )
    serve.add_argument(
        "--log-format",
        choices=("json", "text"),
        default=env.get("LOG_FORMAT", "json").strip().lower(),
        help="log output format",
    )
    serve.add_argument("--log-level", default=env.get("LOG_LEVEL", "INFO"), help="log level")
    return parser


def _tls_files(ca_crt: str | None, client_crt: str | None, client_key: str | None) -> TLSFiles | None:
    supplied = {
        "--ca-crt": ca_crt,
        "--client-crt": client_crt,
        "--client-key": client_key,
    }
    present = [flag for flag, value in supplied.items() if value]
    if not present:
        return None
    if len(present) != len(supplied):
        missing = [flag for flag in supplied if flag not in present]
        raise ConfigError(
            "mutual TLS needs --ca-crt, --client-crt and --client-key together; "
            f"missing: {', '.join(missing)}"
        )
    return TLSFiles(ca_crt=ca_crt, client_crt=client_crt, client_key=client_key)  # type: ignore[arg-type]


def parse_args(argv: Sequence[str] | None = None, env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Parse CLI arguments (defaults from *env*) into a validated :class:`ControllerConfig`."""
    values = env if env is not None else os.environ
    args = build_parser(values).parse_args(argv)

    if args.log_format not in {"json", "text"}:
        raise ConfigError(f"LOG_FORMAT must be 'json' or 'text', got: {args.log_format!r}")
    if not args.dex_grpc_address.strip():
        raise ConfigError("--dex-grpc-address must be a non-empty host:port")
    if not (args.watch_ingresses or args.watch_configmaps or args.watch_secrets):
        raise ConfigError("at least one of Ingresses, ConfigMaps or Secrets must be watched")
    if (args.watch_configmaps or args.watch_secrets) and not args.label_selector.strip():
        raise ConfigError("--label-selector must be non-empty when watching ConfigMaps or Secrets")
    if args.resync_seconds < 0:
        raise ConfigError(f"--resync-seconds must be >= 0, got: {args.resync_seconds}")
    if not 1 <= args.health_port <= 65535:
        raise ConfigError(f"--health-port must be between 1 and 65535, got: {args.health_port}")

    return ControllerConfig(
        in_cluster=args.incluster,
        kubeconfig=args.kubeconfig or None,
        dex_grpc_address=args.dex_grpc_address.strip(),
        tls=_tls_files(args.ca_crt, args.client_crt, args.client_key),
        watch_ingresses=args.watch_ingresses,
        watch_configmaps=args.watch_configmaps,
        watch_secrets=args.watch_secrets,
        label_selector=args.label_selector.strip(),
        resync_seconds=args.resync_seconds,
        health_port=args.health_port,
        log_format=args.log_format,
        log_level=args.log_level.upper(),
    )
