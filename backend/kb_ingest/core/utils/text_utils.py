# backend/kb_ingest/core/utils/text_utils.py
import re
from html.parser import HTMLParser

BLOCK_TAGS = frozenset({
    "p", "div", "br", "li", "tr", "ul", "ol", "td", "th",
    "h1", "h2", "h3", "h4", "h5", "h6",
})
SKIP_TAGS = frozenset({"script", "style"})


class _HTMLTextExtractor(HTMLParser):
    """HTML to text converter using Python's built-in html.parser.

    Comments are dropped and entities decoded by the parser itself.
    """

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._text_parts = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in SKIP_TAGS:
            self._skip_depth += 1
        elif tag in BLOCK_TAGS:
            self._text_parts.append("\n")
        else:
            self._text_parts.append(" ")

    def handle_startendtag(self, tag, attrs):
        if tag in BLOCK_TAGS:
            self._text_parts.append("\n")
        elif tag not in SKIP_TAGS:
            self._text_parts.append(" ")

    def handle_endtag(self, tag):
        if tag in SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in BLOCK_TAGS:
            self._text_parts.append("\n")
        else:
            self._text_parts.append(" ")

    def handle_data(self, data):
        if not self._skip_depth:
            self._text_parts.append(data)

    def get_text(self) -> str:
        return normalize_whitespace("".join(self._text_parts))


def normalize_whitespace(text: str) -> str:
    text = re.sub(r"[ \t\f\v]+", " ", text)  # Collapse horizontal whitespace
    text = re.sub(r"^ +| +$", "", text, flags=re.MULTILINE)  # Trim each line
    text = re.sub(r"\n\s*\n", "\n\n", text)  # Collapse blank lines
    return text.strip()


def html_to_text(html: str) -> str:
    """
    Convert HTML to plain text using Python's built-in html.parser.

    - Removes script/style content and comments
    - Block-level tags become line breaks, other tags become spaces
    - Decodes HTML entities
    - Collapses whitespace and blank lines

    Args:
        html: HTML string to convert

    Returns:
        Plain text string
    """
    if not html:
        return ""

    parser = _HTMLTextExtractor()
    parser.feed(html)
    parser.close()
    return parser.get_text()


def count_words(text: str) -> int:
    """Number of whitespace-separated words."""
    return len(text.split()) if text else 0
