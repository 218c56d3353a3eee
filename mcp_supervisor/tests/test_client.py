from unittest.mock import MagicMock, patch

import pytest
import requests

from mcp_supervisor import client

URL = "http://127.0.0.1:5859"


@pytest.fixture(autouse=True)
def empty_cache():
    client.clear_cache()
    yield
    client.clear_cache()


def _reply(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


def test_list_tools_is_cached():
    with patch.object(client.requests, "get", return_value=_reply({"fs": {"tools": []}})) as get:
        assert client.list_tools(URL) == {"fs": {"tools": []}}
        assert client.list_tools(URL) == {"fs": {"tools": []}}
    get.assert_called_once_with(f"{URL}/list_tools", timeout=5)


def test_list_tools_serves_stale_cache_on_error():
    with patch.object(client.requests, "get", return_value=_reply({"fs": {"tools": []}})):
        client.list_tools(URL)
    with patch.object(client, "time") as fake_time, \
            patch.object(client.requests, "get", side_effect=requests.ConnectionError("down")):
        fake_time.time.return_value = 10 ** 12
        assert client.list_tools(URL) == {"fs": {"tools": []}}


def test_list_tools_without_cache_raises():
    with patch.object(client.requests, "get", side_effect=requests.ConnectionError("down")):
        with pytest.raises(requests.ConnectionError):
            client.list_tools(URL)


def test_call_tool_payload():
    with patch.object(client.requests, "post", return_value=_reply({"result": "ok"})) as post:
        assert client.call_tool(URL, "read", {"path": "/a"}, mcp_server="fs") == {"result": "ok"}
    post.assert_called_once_with(f"{URL}/call_tool",
                                 json={"name": "read", "arguments": {"path": "/a"}, "server": "fs"},
                                 timeout=client.DEFAULT_TIMEOUT)


def test_start_clears_cache():
    with patch.object(client.requests, "get", return_value=_reply({})) as get, \
            patch.object(client.requests, "post", return_value=_reply({})):
        client.list_tools(URL)
        client.start(URL, "fs")
        client.list_tools(URL)
    assert get.call_count == 2


def test_refresh_bypasses_fresh_cache():
    with patch.object(client.requests, "get", side_effect=[_reply({"fs": {}}), _reply({"fs": {}, "web": {}})]):
        assert client.list_tools(URL) == {"fs": {}}
        assert client.list_tools(URL, refresh=True) == {"fs": {}, "web": {}}
        assert client.list_tools(URL) == {"fs": {}, "web": {}}
