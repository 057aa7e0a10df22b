"""Deduplication helpers (core domain)."""

from __future__ import annotations

import base64
import hashlib
import re
from typing import Optional

from core.models import SourceDocument


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_for_fingerprint(text: str) -> str:
    """Normalize text for deterministic fingerprinting."""

    return _collapse_whitespace(text).lower()


def compute_fingerprint(source_type: str, normalized_text: str) -> str:
    """Return a per-source content fingerprint."""

    payload = f"{source_type}\n{normalized_text}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def natural_key(document: SourceDocument) -> Optional[str]:
    """Return a hash of (source_type, url, date_published) when all are present."""

    if not document.url or not document.date_published:
        return None
    payload = f"{document.source_type}\n{document.url}\n{document.date_published}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def dedup_key(document: SourceDocument) -> str:
    """Key identifying the message a source document turns into.

    Documents with a stable natural key use it; everything else falls back to
    the normalized content hash so re-crawled copies still collapse.
    """

    key = natural_key(document)
    if key is not None:
        return key
    text = document.message or document.markdown_text or ""
    return compute_fingerprint(document.source_type, normalize_for_fingerprint(f"{document.title}\n{text}"))


def encode_document_id(url: str) -> str:
    """Encode a URL into a storage-safe source document id."""

    encoded = base64.b64encode(url.encode("utf-8")).decode("ascii")
    return re.sub(r"[/+=]", "_", encoded)
