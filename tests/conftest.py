import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from rpoly.config import get_settings


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Run every test from an empty directory so no local .env leaks into AgentSettings."""
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def mock_httpx_client(monkeypatch):
    """Mocks httpx.AsyncClient to prevent actual network calls.

    The constructor kwargs are kept on ``init_kwargs`` for header assertions.
    """
    mock_client_instance = AsyncMock(spec=httpx.AsyncClient)
    mock_client_instance.request.return_value = make_response(json_body={})
    mock_client_instance.aclose = AsyncMock()

    def factory(**kwargs):
        mock_client_instance.init_kwargs = kwargs
        return mock_client_instance

    monkeypatch.setattr("httpx.AsyncClient", factory)
    return mock_client_instance


def make_response(status_code=200, json_body=None, text=""):
    """Helper to create a mock httpx response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.http_version = "HTTP/2"
    resp.text = text
    if isinstance(json_body, Exception):
        resp.json.side_effect = json_body
    else:
        resp.json.return_value = json_body
    return resp


@pytest.fixture
def response():
    return make_response
