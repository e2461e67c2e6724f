# backend/kb_ingest/core/search/content_hasher.py
"""
Content fingerprinting used for change detection.

Documents and crawled pages store the fingerprint of the text that was last
indexed. A new ingestion whose fingerprint matches is skipped, so identical
content is never re-embedded.

The text is normalized before hashing: CRLF and lone CR become LF and outer
whitespace is stripped. Nothing else is touched, so any visible edit (even one
character) produces a different fingerprint.
"""

import hashlib


def normalize_for_hash(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def compute_content_hash(text: str) -> str:
    """
    Return the SHA-256 fingerprint of normalized text.

    Args:
        text: Extracted document or page text

    Returns:
        64-character lowercase hex digest
    """
    return hashlib.sha256(normalize_for_hash(text or "").encode("utf-8")).hexdigest()


def content_changed(previous_hash, text: str) -> bool:
    """True when text differs from the content fingerprinted as previous_hash."""
    if not previous_hash:
        return True
    return previous_hash != compute_content_hash(text)
