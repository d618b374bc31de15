from pathlib import Path
import json
import sys

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.crm_client.exceptions import CrmTransportError
from app.crm_client.rest_client import GraphClient


def _graph(handler):
    return GraphClient(lambda: "token-123", tenant="contoso.onmicrosoft.com", transport=httpx.MockTransport(handler))


def test_get_feed_with_key_sends_bearer_token():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"objectId": "abc123", "displayName": "Jane Doe"})

    with _graph(handler) as graph:
        user = graph.get("users", "abc123")

    assert user["displayName"] == "Jane Doe"
    request = seen[0]
    assert request.method == "GET"
    assert request.headers["Authorization"] == "Bearer token-123"
    assert "/contoso.onmicrosoft.com/users('abc123')" in str(request.url)
    assert request.url.params["api-version"] == "1.5"


def test_add_posts_json_body():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"objectId": "new-id"})

    with _graph(handler) as graph:
        created = graph.add("users", {"displayName": "John Doe"})

    assert created == {"objectId": "new-id"}
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"displayName": "John Doe"}


def test_non_json_response_is_transport_error():
    def handler(request):
        return httpx.Response(502, text="Bad Gateway")

    with _graph(handler) as graph:
        with pytest.raises(CrmTransportError) as exc_info:
            graph.get("users")

    assert exc_info.value.http_status == 502
    assert exc_info.value.body == b"Bad Gateway"


def test_connection_error_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with _graph(handler) as graph:
        with pytest.raises(CrmTransportError, match="Error de conexión a Graph"):
            graph.get("users")
