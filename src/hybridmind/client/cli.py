"""CLI client for the HybridMind API."""

from __future__ import annotations

import logging
import time
from typing import (
    Any,
    Dict,
    Tuple,
    cast,
)

import httpx

from hybridmind.common import (
    AnsiColors,
    colored_print,
    format_usage,
)
from hybridmind.config import settings

logger = logging.getLogger(__name__)

AGENT_PREFIX = "/agent "


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
    import signal  # pylint: disable=import-outside-toplevel

    # SIGINT must interrupt a blocking read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str, data: Dict[str, Any], tier: str = "free", max_retries: int = 5
) -> Dict[str, Any]:
    """POST *data* to the API and return the decoded envelope, retrying while it starts up."""
    api_url = f"http://localhost:{settings.API_PORT}{endpoint}"
    headers = {"X-HybridMind-Tier": tier}

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=settings.REQUEST_TIMEOUT_SECONDS) as client:
                response = client.post(api_url, json=data, headers=headers)
                # Error envelopes are JSON too; only a non-JSON body is a transport problem.
                return cast(Dict[str, Any], response.json())
        except httpx.ConnectError:
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
        except (httpx.HTTPError, ValueError) as e:
            logger.error("API request error: %s", str(e))
            return {"success": False, "error": f"Error talking to API: {e}", "code": "ClientError"}

    return {
        "success": False,
        "error": f"Failed to connect to API after {max_retries} attempts",
        "code": "ClientError",
    }


def render(response: Dict[str, Any]) -> None:
    """Print an API envelope."""
    if not response.get("success"):
        colored_print(f"[{response.get('code')}] {response.get('error')}", AnsiColors.RED)
        return

    data = response.get("data") or {}
    for step in data.get("trace", []):
        color = AnsiColors.GREEN if step.get("success") else AnsiColors.RED
        label = f"{step.get('role')} #{step.get('index')} {step.get('model')}"
        detail = step.get("error", {}).get("error") if step.get("error") else "ok"
        colored_print(f"  {label}: {detail}", color)

    if data.get("partial"):
        colored_print(f"Partial result (failed step {data.get('failedStep')})", AnsiColors.YELLOW)
    colored_print(data.get("output") or "(no output)", AnsiColors.YELLOW)
    colored_print(format_usage(response.get("meta", {}).get("usage")), AnsiColors.GREY)


def run_cli(tier: str = "free") -> None:
    """Run the CLI client that communicates with the API."""
    colored_print(
        "\nHybridMind shell - prefix a goal with '/agent' for an agentic run; "
        "type 'exit' or 'quit' (or Ctrl+C) to exit",
        AnsiColors.GREEN,
    )
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue

        if user_msg.startswith(AGENT_PREFIX):
            response = call_api("/agent/execute", {"goal": user_msg[len(AGENT_PREFIX):]}, tier)
        else:
            response = call_api("/run/single", {"prompt": user_msg}, tier)
        render(response)


if __name__ == "__main__":
    run_cli()
