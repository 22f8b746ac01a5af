"""CLI client for the Superpowers API."""

from __future__ import annotations

import logging
import os
import sys
import time
from concurrent.futures import (
    Future,
    ThreadPoolExecutor,
)
from typing import (
    Any,
    Dict,
    Tuple,
    cast,
)

import httpx

from superpowers.config import settings

logger = logging.getLogger(__name__)

_STYLES = {
    "prompt": "\033[94m",
    "reply": "\033[33m",
    "tool": "\033[32m",
    "error": "\033[91m",
    "notice": "\033[2m",
}


def render(kind: str, text: str) -> str:
    """Wrap *text* in the colour for *kind*; plain when ``NO_COLOR`` is set or stdout is no tty."""
    if os.environ.get("NO_COLOR") or not sys.stdout.isatty():
        return text
    return f"{_STYLES[kind]}{text}\033[0m"


def show(kind: str, text: str, **kwargs: Any) -> None:
    print(render(kind, text), **kwargs)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str,
    data: Dict[str, Any],
    max_retries: int = 5,
    base_url: str | None = None,
) -> Dict[str, Any]:
    """Make a POST request to the API and return the response with retries."""
    api_url = f"{base_url or f'http://localhost:{settings.API_PORT}'}{endpoint}"

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=settings.HTTP_TIMEOUT * 5) as client:
                response = client.post(api_url, json=data)
        except httpx.ConnectError as exc:
            if attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                time.sleep(retry_delay)
                continue
            return _error_reply(f"Error connecting to API: {exc}")
        except httpx.HTTPError as exc:
            logger.error("API request error: %s", exc)
            return _error_reply(f"Error connecting to API: {exc}")

        if response.is_error:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            return _error_reply(f"API error ({response.status_code}): {detail}")
        return cast(Dict[str, Any], response.json())

    return _error_reply(f"Failed to connect to API after {max_retries} attempts")


def _error_reply(message: str) -> Dict[str, Any]:
    show("error", message)
    return {"reply": message, "error": True}


def print_response(response: Dict[str, Any]) -> None:
    """Render one ``/agent`` response: tool results first, then the reply."""
    if response.get("error"):
        return
    for result in response.get("tool_results") or []:
        if result.get("error"):
            show("error", f"[{result['name']}] failed: {result['error']}")
        else:
            show("tool", f"[{result['name']}] {result.get('result')}")

    show("reply", response.get("reply") or "No response from API")
    if response.get("finished") is False:
        show(
            "error",
            f"(stopped after {response.get('iterations')} iterations without finishing)",
        )


def await_reply(future: Future[Dict[str, Any]], base_url: str | None = None) -> Dict[str, Any]:
    """Wait for an ``/agent`` reply.  Ctrl+C while waiting asks the server to stop the run."""
    try:
        return future.result()
    except KeyboardInterrupt:
        show("notice", "\nStopping the agent...")
        call_api("/agent/stop", {}, base_url=base_url)
        return future.result()


def run_cli(model: str | None = None, provider: str | None = None) -> None:
    """Run the CLI client that communicates with the API."""
    session_response = call_api("/sessions", {})
    session_id = session_response.get("session_id")

    if not session_id:
        show("error", "Failed to create a session")
        return

    show(
        "notice",
        "\nSuperpowers shell - type 'exit' or 'quit' to leave."
        " Ctrl+C while waiting for a reply stops the agent.",
    )
    while True:
        show("prompt", "\nYou: ", end="")
        user_msg, ok = get_user_message()
        if not ok:
            break
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue
        payload: Dict[str, Any] = {"message": user_msg, "session_id": session_id}
        if model:
            payload["model"] = model
        if provider:
            payload["provider"] = provider
        with ThreadPoolExecutor(max_workers=1) as pool:
            print_response(await_reply(pool.submit(call_api, "/agent", payload)))


if __name__ == "__main__":
    run_cli()
