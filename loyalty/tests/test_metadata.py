"""Tests for link preview metadata extraction."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from loyalty.errors import ValidationError
from loyalty.metadata import MetadataFetchError, extract_metadata, fetch_metadata, validate_url

OG_PAGE = """
<html><head>
  <title>Fallback title</title>
  <meta property="og:title" content="Open Graph Title">
  <meta name="twitter:title" content="Twitter Title">
  <meta name="description" content="Plain description">
  <meta property="og:image" content="/img/cover.png">
</head><body></body></html>
"""


class TestValidateUrl:
    def test_missing(self):
        with pytest.raises(ValidationError, match="URL is required"):
            validate_url("  ")
        with pytest.raises(ValidationError):
            validate_url(None)

    def test_invalid(self):
        with pytest.raises(ValidationError, match="Invalid URL"):
            validate_url("not a url")
        with pytest.raises(ValidationError):
            validate_url("ftp://example.com/file")

    def test_valid_is_stripped(self):
        assert validate_url(" https://example.com/a ") == "https://example.com/a"


class TestExtractMetadata:
    def test_open_graph_first(self):
        meta = extract_metadata(OG_PAGE, "https://example.com/post/1")
        assert meta["title"] == "Open Graph Title"
        assert meta["description"] == "Plain description"

    def test_relative_image_is_resolved(self):
        meta = extract_metadata(OG_PAGE, "https://example.com/post/1")
        assert meta["image"] == "https://example.com/img/cover.png"

    def test_twitter_card_fallback(self):
        page = '<html><head><meta name="twitter:title" content="Tweet"><meta name="twitter:image" ' \
               'content="https://cdn.example.com/t.png"></head></html>'
        meta = extract_metadata(page, "https://example.com")
        assert meta["title"] == "Tweet"
        assert meta["image"] == "https://cdn.example.com/t.png"

    def test_title_tag_fallback(self):
        meta = extract_metadata("<html><head><title> Just a title </title></head></html>", "https://e.com")
        assert meta == {"title": "Just a title", "description": None, "image": None}

    def test_empty_document(self):
        assert extract_metadata("", "https://e.com") == {"title": None, "description": None, "image": None}


class TestFetchMetadata:
    @pytest.mark.asyncio
    async def test_fetches_and_extracts(self):
        with patch("loyalty.metadata._fetch_url", new_callable=AsyncMock) as mock_fetch:
            mock_fetch.return_value = OG_PAGE
            meta = await fetch_metadata("https://example.com/post/1")
        mock_fetch.assert_awaited_once_with("https://example.com/post/1")
        assert meta["title"] == "Open Graph Title"

    @pytest.mark.asyncio
    async def test_http_error_becomes_fetch_error(self):
        request = httpx.Request("GET", "https://example.com")
        error = httpx.HTTPStatusError("404", request=request, response=httpx.Response(404, request=request))
        with patch("loyalty.metadata._fetch_url", new_callable=AsyncMock) as mock_fetch:
            mock_fetch.side_effect = error
            with pytest.raises(MetadataFetchError):
                await fetch_metadata("https://example.com")

    @pytest.mark.asyncio
    async def test_invalid_url_never_fetches(self):
        with patch("loyalty.metadata._fetch_url", new_callable=AsyncMock) as mock_fetch:
            with pytest.raises(ValidationError):
                await fetch_metadata("")
        mock_fetch.assert_not_called()
