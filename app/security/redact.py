"""Log-safe renderings of client identifiers."""
import hashlib


def fingerprint(value: str | None) -> str:
    """Short SHA-256 prefix so logs can correlate clients without storing them."""
    if not value:
        return "anonymous"
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]
