"""aiohttp session helpers shared by the registry client."""

import json
from typing import Any

import aiohttp

USER_AGENT = "registry-image-puller/0.1"


async def create_session(timeout: int = 30) -> aiohttp.ClientSession:
    """Create a client session with a total request timeout.

    Args:
        timeout: Total timeout in seconds for requests made with the session

    Returns:
        New aiohttp session; the caller owns and closes it
    """
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout),
        headers={"User-Agent": USER_AGENT},
    )


def parse_json_response(text: str) -> Any | None:
    """Parse a JSON response body, returning None for empty or invalid input."""
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None
