"""Tests for the interactive CLI client."""

import json

import httpx
import pytest

from superpowers.client import cli


class InterruptedFuture:
    """Future whose first wait is interrupted by Ctrl+C."""

    def __init__(self, reply):
        self.reply = reply
        self.waits = 0

    def result(self):
        self.waits += 1
        if self.waits == 1:
            raise KeyboardInterrupt
        return self.reply


@pytest.fixture
def mock_http(monkeypatch):
    requests = []
    replies = {}

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.url.path, json.loads(request.content)))
        status, body = replies.get(request.url.path, (200, {}))
        return httpx.Response(status, json=body)

    real_client = httpx.Client

    def client_factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(httpx, "Client", client_factory)
    return requests, replies


def test_ctrl_c_while_waiting_stops_the_agent(mock_http) -> None:
    requests, _ = mock_http
    future = InterruptedFuture({"reply": "Operation stopped by user."})

    reply = cli.await_reply(future, base_url="http://api")

    assert reply == {"reply": "Operation stopped by user."}
    assert future.waits == 2
    assert requests == [("/agent/stop", {})]


def test_call_api_reports_http_errors(mock_http, capsys) -> None:
    _, replies = mock_http
    replies["/agent"] = (400, {"detail": "No model configured for provider 'ollama'"})

    reply = cli.call_api("/agent", {"message": "hi"}, base_url="http://api")

    assert reply["error"] is True
    assert reply["reply"] == "API error (400): No model configured for provider 'ollama'"
    assert "API error (400)" in capsys.readouterr().out


def test_print_response_lists_tool_results_then_reply(capsys) -> None:
    cli.print_response(
        {
            "reply": "Done.",
            "finished": True,
            "tool_results": [
                {"name": "listTabs", "result": [1, 2]},
                {"name": "clickElement", "error": "No element"},
            ],
        }
    )

    out = capsys.readouterr().out.splitlines()
    assert out == ["[listTabs] [1, 2]", "[clickElement] failed: No element", "Done."]


def test_render_is_plain_without_a_terminal(capsys) -> None:
    assert cli.render("error", "boom") == "boom"
