from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from tagger.src.registry import ImageReference, RegistryClient, RegistryError, normalize_reference


def _response(
    status_code: int = 200,
    headers: dict[str, str] | None = None,
    json_body: dict[str, Any] | None = None,
) -> SimpleNamespace:
    def raise_for_status() -> None:
        if status_code >= 400:
            raise requests.HTTPError(f"{status_code} error")

    return SimpleNamespace(
        status_code=status_code,
        headers=headers or {},
        json=lambda: json_body or {},
        raise_for_status=raise_for_status,
    )


@pytest.mark.parametrize(
    ("image", "expected"),
    [
        ("app", "docker.io/library/app:latest"),
        ("acme/app", "docker.io/acme/app:latest"),
        ("acme/app:v1", "docker.io/acme/app:v1"),
        ("docker.io/acme/app:latest", "docker.io/acme/app:latest"),
        ("registry-1.docker.io/acme/app:latest", "docker.io/acme/app:latest"),
        ("quay.io/acme/app", "quay.io/acme/app:latest"),
        ("localhost:5000/app:dev", "localhost:5000/app:dev"),
        ("localhost/team/app", "localhost/team/app:latest"),
        ("quay.io/acme/app@sha256:abc", "quay.io/acme/app@sha256:abc"),
    ],
)
def test_parse_normalizes_references(image: str, expected: str) -> None:
    assert normalize_reference(image) == expected


def test_parse_exposes_components() -> None:
    ref = ImageReference.parse("localhost:5000/team/app:dev")

    assert ref.registry == "localhost:5000"
    assert ref.repository == "team/app"
    assert ref.tag == "dev"
    assert ref.digest is None


def test_docker_hub_is_served_from_registry_1() -> None:
    assert ImageReference.parse("acme/app").api_host == "registry-1.docker.io"
    assert ImageReference.parse("quay.io/acme/app").api_host == "quay.io"


def test_parse_rejects_empty_reference() -> None:
    with pytest.raises(ValueError):
        ImageReference.parse("  ")


def test_resolve_returns_digest_reference() -> None:
    session = MagicMock()
    session.get.return_value = _response(headers={"Docker-Content-Digest": "sha256:abc"})
    client = RegistryClient(session=session)

    assert client.resolve("quay.io/acme/app:latest") == "quay.io/acme/app@sha256:abc"
    url = session.get.call_args.args[0]
    assert url == "https://quay.io/v2/acme/app/manifests/latest"


def test_resolve_performs_anonymous_token_exchange() -> None:
    session = MagicMock()
    session.get.side_effect = [
        _response(
            status_code=401,
            headers={
                "WWW-Authenticate": 'Bearer realm="https://auth.docker.io/token",'
                'service="registry.docker.io",scope="repository:acme/app:pull"'
            },
        ),
        _response(json_body={"token": "t0k3n"}),
        _response(headers={"Docker-Content-Digest": "sha256:def"}),
    ]
    client = RegistryClient(session=session)

    assert client.resolve("acme/app") == "docker.io/acme/app@sha256:def"
    token_call = session.get.call_args_list[1]
    assert token_call.args[0] == "https://auth.docker.io/token"
    assert token_call.kwargs["params"] == {
        "scope": "repository:acme/app:pull",
        "service": "registry.docker.io",
    }
    final_headers = session.get.call_args_list[2].kwargs["headers"]
    assert final_headers["Authorization"] == "Bearer t0k3n"


def test_resolve_caps_timeout_by_caller_deadline() -> None:
    session = MagicMock()
    session.get.return_value = _response(headers={"Docker-Content-Digest": "sha256:abc"})
    client = RegistryClient(timeout=10, session=session)

    client.resolve("quay.io/acme/app", timeout=2.5)

    assert session.get.call_args.kwargs["timeout"] == 2.5


def test_resolve_without_digest_header_fails() -> None:
    session = MagicMock()
    session.get.return_value = _response()

    with pytest.raises(RegistryError, match="no digest"):
        RegistryClient(session=session).resolve("quay.io/acme/app")


def test_resolve_wraps_http_errors() -> None:
    session = MagicMock()
    session.get.return_value = _response(status_code=404)

    with pytest.raises(RegistryError, match="failed to fetch manifest"):
        RegistryClient(session=session).resolve("quay.io/acme/missing")


def test_resolve_keeps_pinned_references_without_network() -> None:
    session = MagicMock()

    pinned = RegistryClient(session=session).resolve("quay.io/acme/app@sha256:abc")

    assert pinned == "quay.io/acme/app@sha256:abc"
    session.get.assert_not_called()
