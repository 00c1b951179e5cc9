from __future__ import annotations

import httpx
import pytest

from storefront.api.errors import IdempotencyNoOp, TerminalRejection, TransientDependencyError
from storefront.core.config import settings
from storefront.integrations import github


@pytest.fixture
def github_responds(monkeypatch):
    """Route the GitHub client through a MockTransport answering ``status``."""
    real_client = httpx.Client
    requests: list[httpx.Request] = []
    monkeypatch.setattr(settings, "GITHUB_TOKEN", "ghp_test")

    def install(status: int, headers: dict[str, str] | None = None) -> list[httpx.Request]:
        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(status, headers=headers)

        monkeypatch.setattr(
            github.httpx,
            "Client",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler)),
        )
        return requests

    return install


def test_invite_is_sent(github_responds):
    requests = github_responds(201)

    github.GitHubClient().invite_collaborator(repo="acme/kit", username="octo")

    [request] = requests
    assert request.method == "PUT"
    assert request.url.path == "/repos/acme/kit/collaborators/octo"
    assert request.headers["Authorization"] == "Bearer ghp_test"


@pytest.mark.parametrize(
    ("status", "headers", "error"),
    [
        (204, None, IdempotencyNoOp),
        (502, None, TransientDependencyError),
        (429, None, TransientDependencyError),
        (403, {"x-ratelimit-remaining": "0"}, TransientDependencyError),
        (403, None, TerminalRejection),
        (404, None, TerminalRejection),
    ],
)
def test_invite_response_mapping(github_responds, status, headers, error):
    github_responds(status, headers)
    with pytest.raises(error):
        github.GitHubClient().invite_collaborator(repo="acme/kit", username="octo")


def test_missing_token_is_terminal(monkeypatch):
    monkeypatch.setattr(settings, "GITHUB_TOKEN", None)
    with pytest.raises(TerminalRejection):
        github.GitHubClient().invite_collaborator(repo="acme/kit", username="octo")
