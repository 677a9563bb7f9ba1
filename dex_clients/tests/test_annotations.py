from __future__ import annotations

import pytest

from dex_clients.src.annotations import (
    CLIENT_ID_ANNOTATION,
    CLIENT_NAME_ANNOTATION,
    CLIENT_SECRET_ANNOTATION,
    REDIRECT_URI_ANNOTATION,
    ClientIntent,
    Misconfigured,
    NotOptedIn,
    client_id_of,
    extract,
    split_redirect_uris,
)


def _annotations(**overrides: str | None) -> dict[str, str]:
    values: dict[str, str | None] = {
        CLIENT_ID_ANNOTATION: "my-app",
        REDIRECT_URI_ANNOTATION: "https://my-app.example.com/oauth/callback",
        CLIENT_SECRET_ANNOTATION: "s3cr3t",
    }
    values.update(overrides)
    return {k: v for k, v in values.items() if v is not None}


@pytest.mark.parametrize(
    "annotations",
    [
        None,
        {},
        {"kubernetes.io/ingress.class": "nginx"},
        {REDIRECT_URI_ANNOTATION: "https://x/cb", CLIENT_SECRET_ANNOTATION: "s"},
    ],
)
def test_missing_client_id_is_not_opted_in(annotations: dict[str, str] | None) -> None:
    assert extract(annotations) == NotOptedIn()


def test_missing_redirect_uri_is_misconfigured() -> None:
    result = extract(_annotations(**{REDIRECT_URI_ANNOTATION: None}))

    assert result == Misconfigured(REDIRECT_URI_ANNOTATION)


def test_redirect_uri_with_only_separators_is_misconfigured() -> None:
    result = extract(_annotations(**{REDIRECT_URI_ANNOTATION: " , ,"}))

    assert result == Misconfigured(REDIRECT_URI_ANNOTATION)


def test_missing_secret_is_misconfigured() -> None:
    result = extract(_annotations(**{CLIENT_SECRET_ANNOTATION: None}))

    assert result == Misconfigured(CLIENT_SECRET_ANNOTATION)


def test_blank_secret_is_misconfigured() -> None:
    result = extract(_annotations(**{CLIENT_SECRET_ANNOTATION: "   "}))

    assert result == Misconfigured(CLIENT_SECRET_ANNOTATION)


def test_blank_client_id_is_misconfigured_not_ignored() -> None:
    result = extract(_annotations(**{CLIENT_ID_ANNOTATION: "  "}))

    assert result == Misconfigured(CLIENT_ID_ANNOTATION)


@pytest.mark.parametrize("client_id", ["", "   ", "\t"])
@pytest.mark.parametrize("secret", [None, "s3cr3t"])
def test_blank_client_id_without_redirect_uri_names_redirect_uri(
    client_id: str, secret: str | None
) -> None:
    annotations = _annotations(
        **{
            CLIENT_ID_ANNOTATION: client_id,
            REDIRECT_URI_ANNOTATION: None,
            CLIENT_SECRET_ANNOTATION: secret,
        }
    )

    assert extract(annotations) == Misconfigured(REDIRECT_URI_ANNOTATION)


def test_blank_client_id_without_secret_names_secret() -> None:
    result = extract(_annotations(**{CLIENT_ID_ANNOTATION: "", CLIENT_SECRET_ANNOTATION: None}))

    assert result == Misconfigured(CLIENT_SECRET_ANNOTATION)


def test_redirect_uris_are_trimmed_and_ordered_and_name_defaults_to_id() -> None:
    result = extract(
        {
            CLIENT_ID_ANNOTATION: "a",
            REDIRECT_URI_ANNOTATION: "https://x/cb, https://y/cb ",
            CLIENT_SECRET_ANNOTATION: "s",
        }
    )

    assert result == ClientIntent(
        client_id="a",
        name="a",
        redirect_uris=("https://x/cb", "https://y/cb"),
        secret="s",
    )


def test_duplicate_redirect_uris_are_kept() -> None:
    assert split_redirect_uris("https://x/cb,https://x/cb") == ("https://x/cb", "https://x/cb")


def test_empty_segments_are_dropped() -> None:
    assert split_redirect_uris("https://x/cb,,https://y/cb,") == ("https://x/cb", "https://y/cb")


def test_explicit_name_is_used() -> None:
    result = extract(_annotations(**{CLIENT_NAME_ANNOTATION: "My Application"}))

    assert isinstance(result, ClientIntent)
    assert result.name == "My Application"


def test_blank_name_falls_back_to_id() -> None:
    result = extract(_annotations(**{CLIENT_NAME_ANNOTATION: ""}))

    assert isinstance(result, ClientIntent)
    assert result.name == "my-app"


def test_intent_repr_hides_secret() -> None:
    result = extract(_annotations())

    assert "s3cr3t" not in repr(result)


def test_client_id_of_only_needs_the_id() -> None:
    assert client_id_of({CLIENT_ID_ANNOTATION: " my-app "}) == "my-app"
    assert client_id_of({CLIENT_ID_ANNOTATION: ""}) is None
    assert client_id_of(None) is None
