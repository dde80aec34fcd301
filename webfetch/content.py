import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import html2text
import structlog
import trafilatura
from lxml import html as lxml_html
from lxml.etree import ParserError

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")
_DROP_TAGS = ("script", "style", "noscript", "template")


@dataclass
class ParseResult:
    success: bool
    result: Any = None
    error: Optional[str] = None


def html_to_markdown(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.body_width = 0
    converter.ignore_images = False
    converter.ignore_links = False
    converter.unicode_snob = True
    return converter.handle(html or "").strip()


def html_to_text(html: str) -> str:
    """Visible text of an HTML document with whitespace collapsed."""
    if not html or not html.strip():
        return ""
    try:
        tree = lxml_html.fromstring(html)
    except (ParserError, ValueError) as e:
        logger.warning("html_parse_failed", error=str(e))
        return html.strip()

    for element in tree.xpath("//" + " | //".join(_DROP_TAGS)):
        element.drop_tree()

    text = tree.text_content()
    lines = [_WHITESPACE.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


def parse_json(text: str) -> ParseResult:
    try:
        return ParseResult(success=True, result=json.loads(text))
    except (json.JSONDecodeError, TypeError) as e:
        return ParseResult(success=False, error=str(e))


def extract_main_content(html: str, url: Optional[str] = None, output_format: str = "html") -> Optional[Dict[str, Any]]:
    """Main article content plus metadata, or None when nothing is extractable.

    output_format is "html" (kept markup, for later conversion) or "txt".
    """
    result = trafilatura.extract(
        html,
        output_format="json",
        include_comments=False,
        include_tables=True,
        with_metadata=True,
        include_links=True,
        url=url,
    )
    if not result:
        logger.warning("trafilatura_extraction_failed", url=url)
        return None

    try:
        data = json.loads(result)
    except json.JSONDecodeError as e:
        logger.error("json_decode_error", url=url, error=str(e))
        return None

    content = data.get("text") or ""
    if output_format == "html":
        content = trafilatura.extract(
            html,
            output_format="html",
            include_comments=False,
            include_tables=True,
            include_links=True,
            url=url,
        ) or content

    return {
        "content": content,
        "metadata": {
            "title": data.get("title"),
            "author": data.get("author"),
            "date": data.get("date"),
            "hostname": data.get("hostname"),
            "sitename": data.get("sitename"),
            "language": data.get("language"),
            "excerpt": data.get("excerpt"),
            "url": url,
        },
    }
