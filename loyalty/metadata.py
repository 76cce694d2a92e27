"""Link preview metadata for ``link`` objects (title, description, image)."""
from __future__ import annotations

import logging
from urllib.parse import urljoin, urlparse

import httpx
from lxml import etree, html as lxml_html

from loyalty.config import get_settings
from loyalty.errors import ValidationError

log = logging.getLogger(__name__)

_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


class MetadataFetchError(Exception):
    """The page could not be fetched or returned a non-success status."""


def validate_url(url: str | None) -> str:
    url = (url or "").strip()
    if not url:
        raise ValidationError("URL is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid URL: {url}")
    return url


async def _fetch_url(url: str) -> str:
    settings = get_settings()
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(settings.metadata_timeout_seconds),
        headers={"User-Agent": settings.metadata_user_agent, "Accept": _ACCEPT},
    ) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.text


def _meta_content(tree, name: str) -> str | None:
    # Open Graph, then Twitter cards, then plain meta tags
    for xpath in (
        f"//meta[@property='og:{name}']/@content",
        f"//meta[@name='twitter:{name}']/@content",
        f"//meta[@name='{name}']/@content",
    ):
        values = [v.strip() for v in tree.xpath(xpath) if v.strip()]
        if values:
            return values[0]
    return None


def extract_metadata(raw_html: str, url: str) -> dict[str, str | None]:
    """Pull title, description and an absolute image URL out of a page."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return {"title": None, "description": None, "image": None}

    title = _meta_content(tree, "title")
    if not title:
        title = " ".join(tree.xpath("//title//text()")).strip() or None

    image = _meta_content(tree, "image")
    if image and not image.startswith("http"):
        image = urljoin(url, image)

    return {"title": title, "description": _meta_content(tree, "description"), "image": image}


async def fetch_metadata(url: str | None) -> dict[str, str | None]:
    url = validate_url(url)
    try:
        raw_html = await _fetch_url(url)
    except httpx.HTTPError as exc:
        log.warning("Failed to fetch %s: %s", url, exc)
        raise MetadataFetchError(f"Failed to fetch URL: {exc}") from exc
    return extract_metadata(raw_html, url)
