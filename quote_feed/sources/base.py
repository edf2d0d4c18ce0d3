from __future__ import annotations

from abc import ABC
from typing import Dict

CHROME_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
)


def browser_headers(origin: str | None = None, referer: str | None = None, **extra: str) -> Dict[str, str]:
    """Headers the upstream portals expect from a browser session."""
    headers = {
        "accept": "*/*",
        "accept-language": "en-US,en;q=0.9",
        "user-agent": CHROME_USER_AGENT,
    }
    if origin:
        headers["origin"] = origin
    if referer:
        headers["referer"] = referer
    for key, value in extra.items():
        headers[key.replace("_", "-")] = value
    return headers


class DataSource(ABC):
    """One upstream data class (quotes, halts) behind the facade."""

    name: str

    def __init__(self) -> None:
        self.last_endpoint: str | None = None

    async def aclose(self) -> None:
        return None
