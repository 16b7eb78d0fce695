"""End-to-end tests for the long-lived SSE transport, served by a real uvicorn instance."""

import json
import socket
import threading
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import uvicorn

from salesforce_mcp_gateway.server import create_app

from test_sessions import INITIALIZE, INITIALIZED, _tool_call


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _sse_events(lines):
    """Yield (event, data) pairs from a text/event-stream."""
    event, data = None, []
    for line in lines:
        if not line:
            if data:
                yield event or "message", "\n".join(data)
            event, data = None, []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:"):].strip())


def _next_message(events):
    event, data = next(events)
    assert event == "message"
    return json.loads(data)


@pytest.fixture
def live_app(settings, provider):
    app = create_app(settings, provider=provider)
    port = _free_port()
    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()

    deadline = time.monotonic() + 10
    while not server.started:
        if time.monotonic() > deadline:
            raise RuntimeError("uvicorn did not start")
        time.sleep(0.05)

    yield f"http://127.0.0.1:{port}", app

    server.should_exit = True
    thread.join(timeout=10)


class TestSseRoundtrip:
    def test_initialize_call_and_terminate(self, live_app, fake_sf):
        base_url, app = live_app
        manager = app.state.session_manager
        fake_sf.query.return_value = {"totalSize": 1, "done": True, "records": [{"Id": "001A"}]}

        with httpx.Client(base_url=base_url, timeout=10) as http:
            with http.stream("GET", "/sse") as stream:
                assert stream.status_code == 200
                events = _sse_events(stream.iter_lines())

                event, endpoint = next(events)
                assert event == "endpoint"
                assert endpoint.startswith("/messages/?session_id=")
                session_id = parse_qs(urlparse(endpoint).query)["session_id"][0]
                assert session_id in manager

                resp = http.post(endpoint, json=INITIALIZE)
                assert resp.status_code == 202
                reply = _next_message(events)
                assert reply["id"] == 1
                assert reply["result"]["serverInfo"]["name"] == "salesforce-mcp"

                assert http.post(endpoint, json=INITIALIZED).status_code == 202

                resp = http.post(endpoint, json=_tool_call("soql_query", {"query": "SELECT Id FROM Account"}))
                assert resp.status_code == 202
                reply = _next_message(events)
                assert reply["id"] == 2
                assert reply["result"]["isError"] is False
                records = json.loads(reply["result"]["content"][0]["text"])["records"]
                assert records == [{"Id": "001A"}]

                resp = http.delete("/mcp", headers={"mcp-session-id": session_id})
                assert resp.status_code == 200
                assert resp.json()["terminated"] is True
                assert session_id not in manager

            resp = http.post(endpoint, json=INITIALIZED)
            assert resp.status_code == 404

        fake_sf.query.assert_called_once_with("SELECT Id FROM Account")

    def test_unparseable_message_is_rejected(self, live_app):
        base_url, _ = live_app

        with httpx.Client(base_url=base_url, timeout=10) as http:
            with http.stream("GET", "/sse") as stream:
                _, endpoint = next(_sse_events(stream.iter_lines()))

                resp = http.post(endpoint, content=b"{not json", headers={"Content-Type": "application/json"})
                assert resp.status_code == 400

                resp = http.post(endpoint, json=INITIALIZE)
                assert resp.status_code == 202
