"""
Conversion Adapter - ServiceAdapter implementation for the document conversion service.

HTTP client for a ConvertAPI-style conversion service. Used by the file
extractor to turn office/PDF documents into plain text.

Request:
    POST {base_url}/convert/{ext}/to/txt?Secret=...
    {"Parameters": [{"Name": "File", "FileValue": {"Name": filename, "Data": base64}}]}

Response:
    {"Files": [{"FileName": ..., "FileSize": ..., "FileData": base64 | "Url": ...}]}
    Results delivered as a Url are downloaded.

Usage:
    from kb_ingest.connectors.adapters.conversion_adapter import get_conversion_client

    client = get_conversion_client()
    result = await client.convert_to_text(data, "report.pdf", "pdf")
    print(result.text, result.file_size)
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from kb_ingest.config import settings
from kb_ingest.connectors.adapters.base import ServiceAdapter, mask_secret

logger = logging.getLogger("kb_ingest.conversion_client")

# Formats the conversion service accepts for the txt target
CONVERTIBLE_FORMATS = frozenset({"pdf", "doc", "docx", "ppt", "pptx", "xls", "xlsx", "rtf", "odt"})


class ConversionError(RuntimeError):
    """Raised when the conversion service fails or returns an invalid response."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class ConversionResult(BaseModel):
    """Text produced by the conversion service."""

    text: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None


class ConversionClient(ServiceAdapter):
    """Async client to call the conversion service."""

    CONNECTION_TYPE = "conversion"

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        verify_ssl: Optional[bool] = None,
    ) -> None:
        self.base_url = (base_url or settings.converter_base_url).rstrip("/")
        self.secret = secret if secret is not None else settings.converter_secret
        self.timeout = timeout or settings.converter_timeout
        self.max_retries = max_retries if max_retries is not None else settings.converter_max_retries
        self.verify_ssl = settings.converter_verify_ssl if verify_ssl is None else verify_ssl

    def _get_client(self) -> httpx.AsyncClient:
        """Create a fresh HTTP client per call to avoid event-loop-closed errors in Celery."""
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            verify=self.verify_ssl,
        )

    # ========================================================================
    # ServiceAdapter interface
    # ========================================================================

    def resolve_config(self) -> Dict[str, Any]:
        return {
            "service_url": self.base_url,
            "secret": mask_secret(self.secret),
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "verify_ssl": self.verify_ssl,
        }

    async def test_connection(self) -> Dict[str, Any]:
        """Check the secret against the service's account endpoint."""
        if not self.is_available:
            return {
                "success": False,
                "message": "Conversion service secret not configured",
                "service_url": self.base_url,
            }
        try:
            async with self._get_client() as client:
                response = await client.get("/user", params={"Secret": self.secret}, timeout=10.0)
            ok = response.status_code == 200
            return {
                "success": ok,
                "message": "Conversion service reachable" if ok else f"Conversion service HTTP {response.status_code}",
                "service_url": self.base_url,
            }
        except httpx.HTTPError as e:
            return {
                "success": False,
                "message": f"Conversion connection test failed: {e}",
                "service_url": self.base_url,
            }

    @property
    def is_available(self) -> bool:
        return bool(self.base_url and self.secret)

    # ========================================================================
    # Conversion
    # ========================================================================

    async def convert_to_text(self, data: bytes, filename: str, extension: str) -> ConversionResult:
        """
        Convert a document to plain text.

        Args:
            data: Raw file bytes
            filename: Original file name
            extension: Lowercase source format (must be in CONVERTIBLE_FORMATS)

        Returns:
            ConversionResult with the text and the service-reported size

        Raises:
            ConversionError: On HTTP failure, empty result, or bad payload
        """
        if extension not in CONVERTIBLE_FORMATS:
            raise ConversionError(f"Unsupported conversion format: {extension}", status_code=400)
        if not self.secret:
            raise ConversionError("Conversion service secret not configured", status_code=401)

        payload = {
            "Parameters": [
                {
                    "Name": "File",
                    "FileValue": {
                        "Name": filename,
                        "Data": base64.b64encode(data).decode("ascii"),
                    },
                }
            ]
        }

        retries = max(0, self.max_retries)
        attempt = 0
        last_error: Optional[BaseException] = None

        while attempt <= retries:
            try:
                async with self._get_client() as client:
                    response = await client.post(
                        f"/convert/{extension}/to/txt",
                        params={"Secret": self.secret},
                        json=payload,
                    )

                    if response.status_code >= 400:
                        raise ConversionError(
                            f"Conversion service HTTP {response.status_code}: {response.text[:500]}",
                            status_code=response.status_code,
                        )

                    return await self._parse_result(client, response.json())

            except httpx.RequestError as e:
                last_error = e
                if attempt >= retries:
                    break
                sleep_for = min(2**attempt * 0.5, 6.0)
                logger.warning(
                    f"Conversion request failed (attempt {attempt + 1}/{retries + 1}), "
                    f"retrying in {sleep_for}s: {e}"
                )
                await asyncio.sleep(sleep_for)
                attempt += 1

        raise ConversionError(
            f"Conversion failed after {retries + 1} attempt(s): {last_error!s}",
            status_code=502,
        )

    async def _parse_result(self, client: httpx.AsyncClient, data: Any) -> ConversionResult:
        files = data.get("Files") if isinstance(data, dict) else None
        if not files:
            raise ConversionError("Conversion service returned no files", status_code=502)

        first = files[0]
        file_size = first.get("FileSize")

        if first.get("FileData"):
            try:
                raw = base64.b64decode(first["FileData"])
            except ValueError as e:
                raise ConversionError(f"Invalid FileData in conversion result: {e}", status_code=502)
        elif first.get("Url"):
            download = await client.get(first["Url"])
            if download.status_code >= 400:
                raise ConversionError(
                    f"Failed to download converted file: HTTP {download.status_code}",
                    status_code=download.status_code,
                )
            raw = download.content
        else:
            raise ConversionError("Conversion result has neither FileData nor Url", status_code=502)

        return ConversionResult(
            text=raw.decode("utf-8", errors="replace"),
            file_name=first.get("FileName"),
            file_size=int(file_size) if file_size is not None else None,
        )


def get_conversion_client() -> ConversionClient:
    """Get a ConversionClient configured from settings."""
    return ConversionClient()
