"""
Knowledge feature: turn uploaded bytes into text the chunker can split.

Plain text and markdown pass straight through. PDFs, office documents,
images, HTML/XML and spreadsheets are sent to the Workers AI `toMarkdown`
conversion endpoint. Anything else is decoded as raw text.
"""

import logging
from typing import Protocol

import httpx
from pydantic import BaseModel

from app.core.exceptions import DocumentParseError
from app.features.knowledge.schemas import ParsedDocument

logger = logging.getLogger(__name__)

TEXT_MIMES = {"text/plain"}
MARKDOWN_MIMES = {"text/markdown", "text/x-markdown"}
MARKDOWN_EXTENSIONS = (".md", ".markdown")
TEXT_EXTENSIONS = (".txt",)

CONVERTIBLE_MIMES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.ms-excel.sheet.macroenabled.12",
    "application/vnd.ms-excel.sheet.binary.macroenabled.12",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "application/vnd.apple.numbers",
    "text/html",
    "application/xml",
    "text/xml",
    "text/csv",
}


class ConvertedDocument(BaseModel):
    markdown: str
    tokens: int | None = None


class MarkdownConverter(Protocol):
    """Document-to-markdown provider. Raises on unsupported or corrupt input."""

    async def convert(self, content: bytes, mime: str, filename: str) -> ConvertedDocument: ...


def is_convertible(mime: str) -> bool:
    return mime in CONVERTIBLE_MIMES or mime.startswith("image/")


class CloudflareMarkdownConverter:
    """Client for `POST /accounts/{account_id}/ai/tomarkdown`."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = f"{base_url.rstrip('/')}/accounts/{account_id}/ai/tomarkdown"
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_token}"},
        )

    async def convert(self, content: bytes, mime: str, filename: str) -> ConvertedDocument:
        response = await self._client.post(
            self.url,
            files={"files": (filename, content, mime)},
        )
        response.raise_for_status()

        body = response.json()
        results = body.get("result") or []
        if not body.get("success", True) or not results:
            raise ValueError(f"Conversion returned no result: {body.get('errors')}")

        result = results[0]
        if result.get("format") == "error":
            raise ValueError(result.get("error") or "conversion failed")

        return ConvertedDocument(markdown=result.get("data", ""), tokens=result.get("tokens"))

    async def close(self):
        await self._client.aclose()


class DocumentParser:
    """Parse raw document bytes into a ParsedDocument."""

    def __init__(self, converter: MarkdownConverter | None = None):
        self.converter = converter

    async def parse(self, content: bytes, mime: str, filename: str | None = None) -> ParsedDocument:
        """Extract text from `content`.

        Raises:
            DocumentParseError: The conversion service rejected the document.
                Never retried, the input itself is the problem.
        """
        mime = (mime or "application/octet-stream").split(";")[0].strip().lower()
        name = (filename or "").lower()

        if mime in MARKDOWN_MIMES or name.endswith(MARKDOWN_EXTENSIONS):
            return self._passthrough(content, mime, "markdown")

        if mime in TEXT_MIMES or name.endswith(TEXT_EXTENSIONS):
            return self._passthrough(content, mime, "text")

        if is_convertible(mime):
            return await self._convert(content, mime, filename or "document")

        logger.info(f"📄 Unrecognized mime '{mime}', reading bytes as raw text")
        return self._passthrough(content, mime, "raw")

    async def _convert(self, content: bytes, mime: str, filename: str) -> ParsedDocument:
        if self.converter is None:
            raise DocumentParseError(f"No document converter configured for {mime}", mime=mime)

        try:
            converted = await self.converter.convert(content, mime, filename)
        except Exception as e:
            logger.error(f"❌ Conversion of {filename} ({mime}) failed: {e}")
            raise DocumentParseError(f"Failed to convert {filename}: {e}", mime=mime) from e

        metadata = {
            "mime": mime,
            "type": "converted",
            "original_length": len(converted.markdown),
        }
        if converted.tokens is not None:
            metadata["token_count"] = converted.tokens
        return ParsedDocument(content=converted.markdown, metadata=metadata)

    @staticmethod
    def _passthrough(content: bytes, mime: str, kind: str) -> ParsedDocument:
        text = content.decode("utf-8", errors="replace")
        return ParsedDocument(
            content=text,
            metadata={"mime": mime, "type": kind, "original_length": len(text)},
        )
