"""Content hashes used as deduplication keys."""

import base64
import hashlib


def compute_line_hash(line: str) -> str:
    """SHA-256 of a line, lowercase hex. Global line dedup key."""
    if not line:
        raise ValueError("Cannot hash an empty line")
    return hashlib.sha256(line.encode("utf-8")).hexdigest()


def compute_file_hash(content: bytes | str) -> str:
    """SHA-256 of a whole file, base64. Whole-file dedup key."""
    if not content:
        raise ValueError("Cannot hash empty content")
    if isinstance(content, str):
        content = content.encode("utf-8")
    return base64.b64encode(hashlib.sha256(content).digest()).decode("ascii")
