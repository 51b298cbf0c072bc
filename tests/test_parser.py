"""
Unit tests for DocumentParser and the toMarkdown HTTP client.
"""

import httpx
import pytest

from app.core.exceptions import DocumentParseError
from app.features.knowledge.parser import CloudflareMarkdownConverter, DocumentParser
from fakes import FakeConverter


# -- DocumentParser --

class TestDocumentParser:
    async def test_plain_text_passes_through(self):
        parsed = await DocumentParser().parse(b"hello\nworld", "text/plain")
        assert parsed.content == "hello\nworld"
        assert parsed.metadata == {"mime": "text/plain", "type": "text", "original_length": 11}

    async def test_markdown_by_mime_or_extension(self):
        parser = DocumentParser()
        by_mime = await parser.parse(b"# Title", "text/markdown")
        by_name = await parser.parse(b"# Title", "application/octet-stream", "README.md")

        assert by_mime.metadata["type"] == "markdown"
        assert by_name.metadata["type"] == "markdown"

    async def test_mime_parameters_are_ignored(self):
        parsed = await DocumentParser().parse(b"abc", "text/plain; charset=utf-8")
        assert parsed.metadata["type"] == "text"

    async def test_invalid_utf8_is_replaced(self):
        parsed = await DocumentParser().parse(b"ok \xff\xfe", "text/plain")
        assert parsed.content.startswith("ok ")
        assert "�" in parsed.content

    @pytest.mark.parametrize("mime", [
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/html",
        "text/csv",
        "image/png",
    ])
    async def test_binary_formats_go_to_converter(self, mime):
        converter = FakeConverter(markdown="# Converted")
        parsed = await DocumentParser(converter).parse(b"%PDF-1.7", mime, "doc.bin")

        assert converter.calls == [(mime, "doc.bin")]
        assert parsed.content == "# Converted"
        assert parsed.metadata["type"] == "converted"
        assert parsed.metadata["token_count"] == 42

    async def test_converter_failure_is_parse_error(self):
        converter = FakeConverter(error=RuntimeError("corrupt file"))
        with pytest.raises(DocumentParseError) as exc_info:
            await DocumentParser(converter).parse(b"junk", "application/pdf", "broken.pdf")
        assert exc_info.value.mime == "application/pdf"
        assert "corrupt file" in exc_info.value.message

    async def test_missing_converter_is_parse_error(self):
        with pytest.raises(DocumentParseError):
            await DocumentParser().parse(b"%PDF", "application/pdf")

    async def test_unknown_mime_falls_back_to_raw_text(self):
        parsed = await DocumentParser().parse(b"raw bytes", "application/x-custom")
        assert parsed.content == "raw bytes"
        assert parsed.metadata["type"] == "raw"


# -- CloudflareMarkdownConverter --

class TestCloudflareMarkdownConverter:
    def make_converter(self, handler) -> CloudflareMarkdownConverter:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return CloudflareMarkdownConverter("acct", "token", base_url="https://cf.test/client/v4", client=client)

    async def test_posts_multipart_and_reads_result(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content
            return httpx.Response(200, json={
                "success": True,
                "result": [{"name": "a.pdf", "format": "markdown", "tokens": 7, "data": "# A"}],
            })

        converter = self.make_converter(handler)
        result = await converter.convert(b"%PDF", "application/pdf", "a.pdf")

        assert seen["url"] == "https://cf.test/client/v4/accounts/acct/ai/tomarkdown"
        assert b'name="files"; filename="a.pdf"' in seen["body"]
        assert result.markdown == "# A"
        assert result.tokens == 7

    async def test_error_format_raises(self):
        def handler(request):
            return httpx.Response(200, json={
                "success": True,
                "result": [{"name": "a.pdf", "format": "error", "error": "unsupported"}],
            })

        with pytest.raises(ValueError, match="unsupported"):
            await self.make_converter(handler).convert(b"x", "application/pdf", "a.pdf")

    async def test_http_error_raises(self):
        converter = self.make_converter(lambda request: httpx.Response(500, json={}))
        with pytest.raises(httpx.HTTPStatusError):
            await converter.convert(b"x", "application/pdf", "a.pdf")
