"""Redirect endpoint behavior tests."""

import pytest
from httpx import AsyncClient

from linkapp.admission import AdmissionDecision
from linkapp.errors import LinkStoreUnavailable


@pytest.mark.asyncio
async def test_redirect_known_code(client: AsyncClient, mock_resolver) -> None:
    mock_resolver.resolve.return_value = "https://www.python.org"

    response = await client.get("/abc123", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "https://www.python.org"
    mock_resolver.resolve.assert_awaited_once_with("abc123", client_ip="203.0.113.7", user_agent="pytest-agent")


@pytest.mark.asyncio
async def test_redirect_unknown_code(client: AsyncClient) -> None:
    response = await client.get("/nonexistent", follow_redirects=False)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_redirect_store_unavailable(client: AsyncClient, mock_resolver) -> None:
    mock_resolver.resolve.side_effect = LinkStoreUnavailable("connection refused")

    response = await client.get("/abc123", follow_redirects=False)
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_redirect_rejected_by_admission(client: AsyncClient, mock_resolver, mock_gate) -> None:
    mock_gate.check.return_value = AdmissionDecision(allowed=False, retry_after=17)

    response = await client.get("/abc123", follow_redirects=False)

    assert response.status_code == 429
    assert response.headers["retry-after"] == "17"
    mock_resolver.resolve.assert_not_awaited()


@pytest.mark.asyncio
async def test_repeat_visits_resolve_each_time(client: AsyncClient, mock_resolver) -> None:
    mock_resolver.resolve.return_value = "https://www.github.com"

    for _ in range(3):
        response = await client.get("/ghub", follow_redirects=False)
        assert response.status_code == 302

    assert mock_resolver.resolve.await_count == 3


@pytest.mark.asyncio
async def test_redirect_cache_key_lookalike_is_not_found(client: AsyncClient, mock_resolver) -> None:
    mock_resolver.resolve.return_value = '{"shortCode":"abc123","totalClicks":0}'

    response = await client.get("/stats:abc123", follow_redirects=False)

    assert response.status_code == 404
    mock_resolver.resolve.assert_not_awaited()
