from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from dex_clients.src.annotations import ClientIntent

LOGGER = logging.getLogger(__name__)

_SERVICE = "api.Dex"


class RegistryConfigError(RuntimeError):
    """Raised when the registry channel cannot be configured (e.g. unreadable certificates)."""


class RegistryUnavailable(RuntimeError):
    """Raised when a blocking registry call fails at the transport level."""


def _api_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    """Describe the subset of Dex's ``api.proto`` used by the controller.

    Field numbers match upstream Dex so messages are wire compatible with
    its gRPC API.
    """
    fields = descriptor_pb2.FieldDescriptorProto
    proto = descriptor_pb2.FileDescriptorProto(
        name="dex_clients/api.proto",
        package="api",
        syntax="proto3",
    )

    def add_message(name: str, *specs: tuple[str, int, int, int, str]) -> None:
        message = proto.message_type.add(name=name)
        for field_name, number, field_type, label, type_name in specs:
            entry = message.field.add(
                name=field_name,
                number=number,
                type=field_type,
                label=label,
                json_name=_json_name(field_name),
            )
            if type_name:
                entry.type_name = type_name

    optional = fields.LABEL_OPTIONAL
    repeated = fields.LABEL_REPEATED
    add_message(
        "Client",
        ("id", 1, fields.TYPE_STRING, optional, ""),
        ("secret", 2, fields.TYPE_STRING, optional, ""),
        ("redirect_uris", 3, fields.TYPE_STRING, repeated, ""),
        ("trusted_peers", 4, fields.TYPE_STRING, repeated, ""),
        ("public", 5, fields.TYPE_BOOL, optional, ""),
        ("name", 6, fields.TYPE_STRING, optional, ""),
        ("logo_url", 7, fields.TYPE_STRING, optional, ""),
    )
    add_message("CreateClientReq", ("client", 1, fields.TYPE_MESSAGE, optional, ".api.Client"))
    add_message(
        "CreateClientResp",
        ("already_exists", 1, fields.TYPE_BOOL, optional, ""),
        ("client", 2, fields.TYPE_MESSAGE, optional, ".api.Client"),
    )
    add_message("DeleteClientReq", ("id", 1, fields.TYPE_STRING, optional, ""))
    add_message("DeleteClientResp", ("not_found", 1, fields.TYPE_BOOL, optional, ""))
    add_message("VersionReq")
    add_message(
        "VersionResp",
        ("server", 1, fields.TYPE_STRING, optional, ""),
        ("api", 2, fields.TYPE_INT32, optional, ""),
    )
    return proto


def _json_name(field_name: str) -> str:
    head, *rest = field_name.split("_")
    return head + "".join(part.capitalize() for part in rest)


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_api_file_descriptor().SerializeToString())


def _message_class(name: str) -> Any:
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"api.{name}"))


Client = _message_class("Client")
CreateClientReq = _message_class("CreateClientReq")
CreateClientResp = _message_class("CreateClientResp")
DeleteClientReq = _message_class("DeleteClientReq")
DeleteClientResp = _message_class("DeleteClientResp")
VersionReq = _message_class("VersionReq")
VersionResp = _message_class("VersionResp")


class DexStub:
    """Unary-unary callables for the Dex gRPC service on one shared channel.

    gRPC channels are safe for concurrent use, so a single stub is shared
    by every watch loop.
    """

    def __init__(self, channel: grpc.Channel) -> None:
        self.CreateClient = channel.unary_unary(
            f"/{_SERVICE}/CreateClient",
            request_serializer=CreateClientReq.SerializeToString,
            response_deserializer=CreateClientResp.FromString,
        )
        self.DeleteClient = channel.unary_unary(
            f"/{_SERVICE}/DeleteClient",
            request_serializer=DeleteClientReq.SerializeToString,
            response_deserializer=DeleteClientResp.FromString,
        )
        self.GetVersion = channel.unary_unary(
            f"/{_SERVICE}/GetVersion",
            request_serializer=VersionReq.SerializeToString,
            response_deserializer=VersionResp.FromString,
        )


@dataclass(frozen=True)
class TLSFiles:
    """Paths to the CA bundle and client key pair for mutual TLS."""

    ca_crt: str
    client_crt: str
    client_key: str


def _read_pem(path: str, what: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise RegistryConfigError(f"invalid {what} file: {path}") from exc


def open_channel(address: str, tls: TLSFiles | None = None) -> grpc.Channel:
    """Open the long-lived channel to Dex, plaintext or mutually authenticated."""
    if tls is None:
        LOGGER.info("Connecting to Dex gRPC at %s without TLS", address)
        return grpc.insecure_channel(address)

    credentials = grpc.ssl_channel_credentials(
        root_certificates=_read_pem(tls.ca_crt, "CA crt"),
        private_key=_read_pem(tls.client_key, "client key"),
        certificate_chain=_read_pem(tls.client_crt, "client crt"),
    )
    LOGGER.info("Connecting to Dex gRPC at %s with mutual TLS", address)
    return grpc.secure_channel(address, credentials)


class RegistrationOutcome(enum.Enum):
    CREATED = "created"
    ALREADY_EXISTED = "already_existed"
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    TRANSPORT_FAILED = "transport_failed"


@dataclass(frozen=True)
class RegistrationResult:
    """Outcome of a single registry call.

    ``detail`` carries the gRPC status for transport failures and is
    ``None`` otherwise.
    """

    outcome: RegistrationOutcome
    client_id: str
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not RegistrationOutcome.TRANSPORT_FAILED


def _describe_rpc_error(exc: grpc.RpcError) -> str:
    # Only errors raised by a completed call implement grpc.Call.
    if not isinstance(exc, grpc.Call):
        return str(exc) or type(exc).__name__
    code = exc.code()
    return f"{code.name if code is not None else 'UNKNOWN'}: {exc.details()}"


class RegistryClient:
    """Create and delete Dex clients, folding soft failures into :class:`RegistrationOutcome`.

    Already-exists and not-found arrive in the response payload and are
    reported as distinct outcomes; a :class:`grpc.RpcError` is reported as
    ``TRANSPORT_FAILED``. Nothing is retried here: the next informer resync
    redelivers the event.
    """

    def __init__(
        self,
        stub: Any,
        call_timeout_seconds: float | None = None,
        probe_timeout_seconds: float = 5.0,
    ) -> None:
        self.stub = stub
        self.call_timeout_seconds = call_timeout_seconds
        self.probe_timeout_seconds = probe_timeout_seconds

    @classmethod
    def connect(cls, address: str, tls: TLSFiles | None = None, **kwargs: Any) -> RegistryClient:
        return cls(DexStub(open_channel(address, tls)), **kwargs)

    def create(self, intent: ClientIntent) -> RegistrationResult:
        request = CreateClientReq(
            client=Client(
                id=intent.client_id,
                name=intent.name,
                secret=intent.secret,
                redirect_uris=list(intent.redirect_uris),
            )
        )
        try:
            response = self.stub.CreateClient(request, timeout=self.call_timeout_seconds)
        except grpc.RpcError as exc:
            return RegistrationResult(
                RegistrationOutcome.TRANSPORT_FAILED,
                intent.client_id,
                detail=_describe_rpc_error(exc),
            )
        if response.already_exists:
            return RegistrationResult(RegistrationOutcome.ALREADY_EXISTED, intent.client_id)
        return RegistrationResult(RegistrationOutcome.CREATED, intent.client_id)

    def delete(self, client_id: str) -> RegistrationResult:
        try:
            response = self.stub.DeleteClient(
                DeleteClientReq(id=client_id), timeout=self.call_timeout_seconds
            )
        except grpc.RpcError as exc:
            return RegistrationResult(
                RegistrationOutcome.TRANSPORT_FAILED,
                client_id,
                detail=_describe_rpc_error(exc),
            )
        if response.not_found:
            return RegistrationResult(RegistrationOutcome.NOT_FOUND, client_id)
        return RegistrationResult(RegistrationOutcome.DELETED, client_id)

    def get_version(self) -> str:
        """Round-trip ``GetVersion``; raises :class:`RegistryUnavailable` on transport failure."""
        try:
            response = self.stub.GetVersion(VersionReq(), timeout=self.probe_timeout_seconds)
        except grpc.RpcError as exc:
            raise RegistryUnavailable(_describe_rpc_error(exc)) from exc
        return response.server

    def is_ready(self) -> bool:
        try:
            self.get_version()
        except RegistryUnavailable as exc:
            LOGGER.debug("Dex readiness probe failed: %s", exc)
            return False
        return True
