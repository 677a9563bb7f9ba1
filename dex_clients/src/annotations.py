from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

ANNOTATION_PREFIX = "mintel.com/"
CLIENT_ID_ANNOTATION = f"{ANNOTATION_PREFIX}dex-static-client-id"
CLIENT_NAME_ANNOTATION = f"{ANNOTATION_PREFIX}dex-static-client-name"
REDIRECT_URI_ANNOTATION = f"{ANNOTATION_PREFIX}dex-redirect-uri"
CLIENT_SECRET_ANNOTATION = f"{ANNOTATION_PREFIX}dex-static-client-secret"


@dataclass(frozen=True)
class ClientIntent:
    """Desired Dex client derived from one resource's annotations.

    Recomputed on every event and never cached; the secret is excluded from
    ``repr`` so intents can be logged safely.
    """

    client_id: str
    name: str
    redirect_uris: tuple[str, ...]
    secret: str = field(repr=False)


@dataclass(frozen=True)
class NotOptedIn:
    """The resource carries no client-id annotation."""


@dataclass(frozen=True)
class Misconfigured:
    """The resource opted in but a required companion annotation is missing or blank."""

    missing_key: str


ExtractResult = ClientIntent | NotOptedIn | Misconfigured


def split_redirect_uris(raw: str) -> tuple[str, ...]:
    """Split a comma-separated annotation value, trimming each entry.

    Order and duplicates are preserved; empty segments (``"a,,b"`` or a
    trailing comma) are dropped.
    """
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def client_id_of(annotations: Mapping[str, str] | None) -> str | None:
    """Return the trimmed client id, or ``None`` when absent or blank."""
    client_id = (annotations or {}).get(CLIENT_ID_ANNOTATION)
    if client_id is None or not client_id.strip():
        return None
    return client_id.strip()


def extract(annotations: Mapping[str, str] | None) -> ExtractResult:
    """Map an annotation set to a :class:`ClientIntent` or the reason there is none.

    Pure and total: any mapping (including ``None`` or ``{}``) yields a
    result, never an exception.
    """
    values = annotations or {}

    if CLIENT_ID_ANNOTATION not in values:
        return NotOptedIn()

    # A present id opts in even when blank; companions are reported first.
    redirect_uris = split_redirect_uris(values.get(REDIRECT_URI_ANNOTATION) or "")
    if not redirect_uris:
        return Misconfigured(REDIRECT_URI_ANNOTATION)

    secret = (values.get(CLIENT_SECRET_ANNOTATION) or "").strip()
    if not secret:
        return Misconfigured(CLIENT_SECRET_ANNOTATION)

    client_id = client_id_of(values)
    if client_id is None:
        return Misconfigured(CLIENT_ID_ANNOTATION)

    name = (values.get(CLIENT_NAME_ANNOTATION) or "").strip() or client_id

    return ClientIntent(
        client_id=client_id,
        name=name,
        redirect_uris=redirect_uris,
        secret=secret,
    )
