# ============================================================================
# backend/kb_ingest/core/ingestion/extraction_service.py
# ============================================================================
"""
Extraction Service for KB Ingest - Text Extraction from Files and URLs

Turns a raw ingestion source into normalized markdown plus metadata. Each
source kind has its own extractor:

    - FileSourceExtractor: uploaded files (base64 string or raw bytes).
      txt/md are decoded directly; office and PDF formats go through the
      external conversion service; anything else fails before any network call.
    - UrlSourceExtractor: a single web page fetched over HTTP and reduced to
      plain text.

Usage:
    from kb_ingest.core.ingestion.extraction_service import extraction_service

    output = await extraction_service.extract("file", content_b64, "report.pdf")
    print(output.markdown, output.metadata["wordCount"])

Author: KB Ingest Development Team
Version: 1.0.0
"""

import base64
import binascii
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

import httpx

from kb_ingest.config import settings
from kb_ingest.connectors.adapters.conversion_adapter import (
    CONVERTIBLE_FORMATS,
    ConversionClient,
    ConversionError,
    get_conversion_client,
)
from kb_ingest.core.utils.text_utils import count_words, html_to_text

logger = logging.getLogger("kb_ingest.extraction_service")

DIRECT_TEXT_FORMATS = frozenset({"txt", "md"})
ALLOWED_URL_CONTENT_TYPES = ("text/html", "text/plain")

# Values recorded in ExtractionLog.extraction_method
METHOD_CONVERSION = "conversion_service"
METHOD_DIRECT_TEXT = "direct_text"
METHOD_WEB_FETCH = "web_fetch"
METHOD_CRAWLER = "crawler"


class ExtractionError(RuntimeError):
    """Raised when a source cannot be turned into text."""


class UnsupportedFormatError(ExtractionError):
    """File extension is neither direct text nor convertible."""


class FetchFailedError(ExtractionError):
    """URL could not be fetched (network failure or non-2xx status)."""


class UnsupportedContentTypeError(ExtractionError):
    """URL returned something other than HTML or plain text."""


class EmptyContentError(ExtractionError):
    """Extraction produced no usable text."""


@dataclass
class ExtractionOutput:
    """
    Normalized extraction result.

    Attributes:
        markdown: Text with a heading naming the source
        metadata: originalFormat, wordCount, fileSize, convertApiUsed, ...
        method: One of the METHOD_* values
    """

    markdown: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    method: str = METHOD_DIRECT_TEXT


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lstrip(".").lower()


def decode_file_content(content: Union[str, bytes]) -> bytes:
    """Raw bytes pass through; strings are treated as base64 (data URLs allowed)."""
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    payload = content.split(",", 1)[1] if content.startswith("data:") and "," in content else content
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ExtractionError(f"File content is not valid base64: {e}") from e


class SourceExtractor(ABC):
    """Base class for source-kind specific extractors."""

    source_kind: str

    @abstractmethod
    async def extract(self, content: Union[str, bytes], filename: str) -> ExtractionOutput:
        ...


class FileSourceExtractor(SourceExtractor):
    """Extract text from an uploaded file."""

    source_kind = "file"

    def __init__(self, conversion_client: Optional[ConversionClient] = None):
        self._conversion_client = conversion_client

    @property
    def conversion_client(self) -> ConversionClient:
        if self._conversion_client is None:
            self._conversion_client = get_conversion_client()
        return self._conversion_client

    async def extract(self, content: Union[str, bytes], filename: str) -> ExtractionOutput:
        ext = file_extension(filename)
        if ext not in DIRECT_TEXT_FORMATS and ext not in CONVERTIBLE_FORMATS:
            raise UnsupportedFormatError(f"Unsupported file format: {ext or 'unknown'}")

        data = decode_file_content(content)
        file_size = len(data)
        converter_used = False

        if ext in DIRECT_TEXT_FORMATS:
            text = data.decode("utf-8", errors="replace").strip()
            method = METHOD_DIRECT_TEXT
        else:
            client = self.conversion_client
            if not client.is_available:
                raise ExtractionError("Conversion service secret not configured")
            try:
                result = await client.convert_to_text(data, filename, ext)
            except ConversionError as e:
                raise ExtractionError(f"Document conversion failed: {e}") from e
            text = result.text.strip()
            if result.file_size:
                file_size = result.file_size
            converter_used = True
            method = METHOD_CONVERSION

        if not text:
            raise EmptyContentError(f"No text could be extracted from {filename}")

        logger.info(f"Extracted {len(text)} chars from {filename} ({method})")
        return ExtractionOutput(
            markdown=f"# {filename}\n\n{text}",
            metadata={
                "originalFormat": ext,
                "wordCount": count_words(text),
                "fileSize": file_size,
                "convertApiUsed": converter_used,
            },
            method=method,
        )


class UrlSourceExtractor(SourceExtractor):
    """Fetch a single web page and extract its text."""

    source_kind = "url"

    def __init__(
        self,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        min_chars: Optional[int] = None,
    ):
        self.timeout = timeout or settings.url_fetch_timeout
        self.user_agent = user_agent or settings.url_fetch_user_agent
        self.min_chars = settings.url_min_content_chars if min_chars is None else min_chars

    def _get_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
        )

    async def extract(self, content: Union[str, bytes], filename: str) -> ExtractionOutput:
        url = (content.decode("utf-8") if isinstance(content, bytes) else content).strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise FetchFailedError(f"Invalid URL: {url}")

        try:
            async with self._get_client() as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise FetchFailedError(f"Failed to fetch URL: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise FetchFailedError(f"Failed to fetch URL: HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "").lower()
        if not any(allowed in content_type for allowed in ALLOWED_URL_CONTENT_TYPES):
            raise UnsupportedContentTypeError(f"Unsupported content type: {content_type or 'unknown'}")

        body = response.text
        text = html_to_text(body) if "text/html" in content_type else body.strip()
        if len(text) < self.min_chars:
            raise EmptyContentError("No meaningful content extracted from URL")

        hostname = parsed.hostname or parsed.netloc
        logger.info(f"Extracted {len(text)} chars from {url}")
        return ExtractionOutput(
            markdown=f"# {hostname}\n\n**Source URL:** {url}\n\n{text}",
            metadata={
                "originalFormat": "html" if "text/html" in content_type else "txt",
                "wordCount": count_words(text),
                "fileSize": len(body.encode("utf-8")),
                "convertApiUsed": False,
                "sourceUrl": url,
            },
            method=METHOD_WEB_FETCH,
        )


class ExtractionService:
    """Dispatches extraction to the extractor registered for a source kind."""

    def __init__(self, extractors: Optional[Dict[str, SourceExtractor]] = None):
        self._extractors = extractors or {
            "file": FileSourceExtractor(),
            "url": UrlSourceExtractor(),
        }

    def get_extractor(self, source_kind: str) -> SourceExtractor:
        extractor = self._extractors.get(source_kind)
        if extractor is None:
            raise UnsupportedFormatError(f"Unsupported source kind: {source_kind}")
        return extractor

    async def extract(
        self, source_kind: str, content: Union[str, bytes], filename: str
    ) -> ExtractionOutput:
        """
        Extract markdown from a source.

        Raises:
            ExtractionError (or a subclass) when the source cannot be extracted
        """
        return await self.get_extractor(source_kind).extract(content, filename)


# Global service instance
extraction_service = ExtractionService()
