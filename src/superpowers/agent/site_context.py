"""Fetches a site's ``llms.txt`` so the agent can ground answers in publisher-provided context."""

import asyncio
import logging
from typing import (
    Optional,
    Set,
)
from urllib.parse import (
    urljoin,
    urlparse,
)

import httpx

from superpowers.config import settings

logger = logging.getLogger(__name__)


class SiteContextFetcher:
    """
    Looks up ``llms.txt`` / ``llms-full.txt`` next to a page.

    Hosts that have neither file are remembered and not asked again.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self._not_found: Set[str] = set()

    def is_known_missing(self, url: str) -> bool:
        return urlparse(url).hostname in self._not_found

    async def fetch(self, url: str) -> Optional[str]:
        """Return the ``llms.txt`` text for the site of *url*, or *None*."""
        host = urlparse(url).hostname
        if not host or host in self._not_found:
            return None

        client = self._client or httpx.AsyncClient(
            timeout=settings.HTTP_TIMEOUT, follow_redirects=True
        )
        try:
            llms, llms_full = await asyncio.gather(
                self._get_text(client, urljoin(url, "/llms.txt")),
                self._get_text(client, urljoin(url, "/llms-full.txt")),
            )
        finally:
            if self._client is None:
                await client.aclose()

        if llms is None and llms_full is None:
            logger.info("No llms files found for %s", host)
            self._not_found.add(host)
            return None
        return llms or llms_full

    @staticmethod
    async def _get_text(client: httpx.AsyncClient, url: str) -> Optional[str]:
        try:
            resp = await client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("Error fetching %s: %s", url, exc)
            return None
        if resp.status_code != 200:
            return None
        return resp.text
