"""
Tests for source extraction: HTML normalization, file conversion and single
URL fetching.

HTTP is served by httpx.MockTransport handlers injected through each
client's _get_client(); no test reaches the network.
"""

import base64
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from kb_ingest.connectors.adapters.conversion_adapter import ConversionClient, ConversionError
from kb_ingest.core.ingestion.extraction_service import (
    METHOD_CONVERSION,
    METHOD_DIRECT_TEXT,
    METHOD_WEB_FETCH,
    EmptyContentError,
    ExtractionError,
    ExtractionService,
    FetchFailedError,
    FileSourceExtractor,
    UnsupportedContentTypeError,
    UnsupportedFormatError,
    UrlSourceExtractor,
    decode_file_content,
)
from kb_ingest.core.utils.text_utils import count_words, html_to_text


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _mock_client(handler, **kwargs):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)


# =============================================================================
# HTML TO TEXT
# =============================================================================


class TestHtmlToText:

    def test_strips_scripts_styles_and_comments(self):
        html = (
            "<html><head><style>body { color: red }</style>"
            "<script>alert('x')</script></head>"
            "<body><!-- hidden --><p>Visible text</p></body></html>"
        )
        text = html_to_text(html)
        assert text == "Visible text"

    def test_block_tags_become_line_breaks(self):
        text = html_to_text("<h1>Title</h1><p>First</p><p>Second</p>")
        assert text.splitlines()[0] == "Title"
        assert "First" in text and "Second" in text
        assert "\n\n\n" not in text

    def test_inline_tags_keep_words_apart(self):
        assert html_to_text("<p>alpha<span>beta</span></p>") == "alpha beta"

    def test_entities_decoded_and_whitespace_collapsed(self):
        assert html_to_text("<p>Fish   &amp;\t\tChips&nbsp;</p>") == "Fish & Chips"

    def test_empty_html(self):
        assert html_to_text("") == ""

    def test_count_words(self):
        assert count_words("one two\nthree") == 3
        assert count_words("") == 0


# =============================================================================
# FILE EXTRACTION
# =============================================================================


class TestFileSourceExtractor:

    @pytest.mark.asyncio
    async def test_plain_text_decoded_directly(self):
        extractor = FileSourceExtractor(conversion_client=ConversionClient(secret="s"))
        output = await extractor.extract(_b64("Hello knowledge base"), "notes.txt")

        assert output.markdown == "# notes.txt\n\nHello knowledge base"
        assert output.method == METHOD_DIRECT_TEXT
        assert output.metadata["originalFormat"] == "txt"
        assert output.metadata["wordCount"] == 3
        assert output.metadata["convertApiUsed"] is False

    @pytest.mark.asyncio
    async def test_unsupported_format_fails_without_network(self):
        client = ConversionClient(secret="s")
        with patch.object(client, "_get_client") as mock_get_client:
            with pytest.raises(UnsupportedFormatError):
                await FileSourceExtractor(conversion_client=client).extract(_b64("data"), "archive.zip")
        mock_get_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_office_file_goes_through_conversion(self):
        client = ConversionClient(secret="s")
        client.convert_to_text = AsyncMock(
            return_value=type("R", (), {"text": " Converted body ", "file_size": 2048})()
        )

        output = await FileSourceExtractor(conversion_client=client).extract(_b64("binary"), "Report.DOCX")

        client.convert_to_text.assert_awaited_once()
        assert client.convert_to_text.await_args.args[2] == "docx"
        assert output.method == METHOD_CONVERSION
        assert output.markdown == "# Report.DOCX\n\nConverted body"
        assert output.metadata["fileSize"] == 2048
        assert output.metadata["convertApiUsed"] is True

    @pytest.mark.asyncio
    async def test_conversion_without_secret_fails(self):
        extractor = FileSourceExtractor(conversion_client=ConversionClient(secret=""))
        with pytest.raises(ExtractionError, match="secret not configured"):
            await extractor.extract(_b64("x"), "slides.pptx")

    @pytest.mark.asyncio
    async def test_conversion_error_wrapped(self):
        client = ConversionClient(secret="s")
        client.convert_to_text = AsyncMock(side_effect=ConversionError("HTTP 500", status_code=500))
        with pytest.raises(ExtractionError, match="Document conversion failed"):
            await FileSourceExtractor(conversion_client=client).extract(_b64("x"), "a.pdf")

    @pytest.mark.asyncio
    async def test_empty_text_file(self):
        with pytest.raises(EmptyContentError):
            await FileSourceExtractor(conversion_client=ConversionClient(secret="s")).extract(_b64("  \n "), "blank.md")

    def test_decode_data_url(self):
        assert decode_file_content("data:text/plain;base64," + _b64("hi")) == b"hi"

    def test_decode_raw_bytes_passthrough(self):
        assert decode_file_content(b"raw") == b"raw"


# =============================================================================
# CONVERSION CLIENT
# =============================================================================


class TestConversionClient:

    @pytest.mark.asyncio
    async def test_posts_base64_payload_and_decodes_file_data(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["secret"] = request.url.params.get("Secret")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "Files": [{"FileName": "a.txt", "FileSize": 11, "FileData": _b64("Hello world")}],
            })

        client = ConversionClient(base_url="https://convert.test", secret="abc", max_retries=0)
        with patch.object(client, "_get_client", side_effect=lambda: _mock_client(handler, base_url=client.base_url)):
            result = await client.convert_to_text(b"%PDF-1.7", "a.pdf", "pdf")

        assert result.text == "Hello world"
        assert result.file_size == 11
        assert seen["path"] == "/convert/pdf/to/txt"
        assert seen["secret"] == "abc"
        file_value = seen["body"]["Parameters"][0]["FileValue"]
        assert file_value["Name"] == "a.pdf"
        assert base64.b64decode(file_value["Data"]) == b"%PDF-1.7"

    @pytest.mark.asyncio
    async def test_downloads_url_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.startswith("/convert/"):
                return httpx.Response(200, json={"Files": [{"FileName": "a.txt", "Url": "https://convert.test/files/a.txt"}]})
            return httpx.Response(200, content=b"Downloaded text")

        client = ConversionClient(base_url="https://convert.test", secret="abc", max_retries=0)
        with patch.object(client, "_get_client", side_effect=lambda: _mock_client(handler, base_url=client.base_url)):
            result = await client.convert_to_text(b"x", "a.docx", "docx")

        assert result.text == "Downloaded text"

    @pytest.mark.asyncio
    async def test_no_files_is_an_error(self):
        client = ConversionClient(base_url="https://convert.test", secret="abc", max_retries=0)
        handler = lambda request: httpx.Response(200, json={"Files": []})  # noqa: E731
        with patch.object(client, "_get_client", side_effect=lambda: _mock_client(handler, base_url=client.base_url)):
            with pytest.raises(ConversionError, match="no files"):
                await client.convert_to_text(b"x", "a.pdf", "pdf")

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        client = ConversionClient(base_url="https://convert.test", secret="abc", max_retries=0)
        handler = lambda request: httpx.Response(401, text="bad secret")  # noqa: E731
        with patch.object(client, "_get_client", side_effect=lambda: _mock_client(handler, base_url=client.base_url)):
            with pytest.raises(ConversionError) as exc_info:
                await client.convert_to_text(b"x", "a.pdf", "pdf")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_network_errors_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"Files": [{"FileData": _b64("ok")}]})

        client = ConversionClient(base_url="https://convert.test", secret="abc", max_retries=2)
        with patch.object(client, "_get_client", side_effect=lambda: _mock_client(handler, base_url=client.base_url)), \
                patch("kb_ingest.connectors.adapters.conversion_adapter.asyncio.sleep", new=AsyncMock()):
            result = await client.convert_to_text(b"x", "a.pdf", "pdf")

        assert result.text == "ok"
        assert calls["n"] == 2


# =============================================================================
# URL EXTRACTION
# =============================================================================


class TestUrlSourceExtractor:

    @pytest.fixture
    def extractor(self):
        return UrlSourceExtractor(timeout=5, user_agent="kb-test", min_chars=10)

    @pytest.mark.asyncio
    async def test_html_page_normalized(self, extractor):
        html = (
            "<html><head><script>var x = 1;</script><style>p{}</style></head>"
            "<body><h1>Welcome</h1><p>Our refund policy covers thirty days.</p></body></html>"
        )
        def handler(request):
            return httpx.Response(200, text=html, headers={"content-type": "text/html; charset=utf-8"})

        with patch.object(extractor, "_get_client", return_value=_mock_client(handler)):
            output = await extractor.extract("https://www.example.com/policy", "")

        assert output.method == METHOD_WEB_FETCH
        assert output.markdown.startswith("# www.example.com\n\n**Source URL:** https://www.example.com/policy\n\n")
        assert "Welcome\n" in output.markdown
        assert "var x" not in output.markdown
        assert output.metadata["sourceUrl"] == "https://www.example.com/policy"
        assert output.metadata["originalFormat"] == "html"

    def test_client_follows_redirects_with_user_agent(self, extractor):
        client = extractor._get_client()
        assert client.follow_redirects is True
        assert client.headers["user-agent"] == "kb-test"

    @pytest.mark.asyncio
    async def test_non_2xx_is_fetch_failure(self, extractor):
        handler = lambda request: httpx.Response(404, text="missing")  # noqa: E731
        with patch.object(extractor, "_get_client", return_value=_mock_client(handler)):
            with pytest.raises(FetchFailedError, match="404"):
                await extractor.extract("https://example.com/missing", "")

    @pytest.mark.asyncio
    async def test_network_error_is_fetch_failure(self, extractor):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with patch.object(extractor, "_get_client", return_value=_mock_client(handler)):
            with pytest.raises(FetchFailedError):
                await extractor.extract("https://example.com", "")

    @pytest.mark.asyncio
    async def test_unsupported_content_type(self, extractor):
        handler = lambda request: httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})  # noqa: E731
        with patch.object(extractor, "_get_client", return_value=_mock_client(handler)):
            with pytest.raises(UnsupportedContentTypeError):
                await extractor.extract("https://example.com/file.pdf", "")

    @pytest.mark.asyncio
    async def test_too_little_content(self, extractor):
        handler = lambda request: httpx.Response(200, text="<p>Hi</p>", headers={"content-type": "text/html"})  # noqa: E731
        with patch.object(extractor, "_get_client", return_value=_mock_client(handler)):
            with pytest.raises(EmptyContentError, match="No meaningful content"):
                await extractor.extract("https://example.com", "")

    @pytest.mark.asyncio
    async def test_invalid_url_rejected_without_fetch(self, extractor):
        with patch.object(extractor, "_get_client") as mock_get_client:
            with pytest.raises(FetchFailedError):
                await extractor.extract("ftp://example.com/file", "")
        mock_get_client.assert_not_called()


class TestExtractionService:

    @pytest.mark.asyncio
    async def test_unknown_source_kind(self):
        with pytest.raises(UnsupportedFormatError):
            await ExtractionService().extract("email", "x", "x.eml")
