# utils.py
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote


def construct_url(bucket: str, region: str, key: str, endpoint_url: Optional[str] = None) -> str:
    """
    Object URL for `key`, with each path segment percent-encoded.

    Virtual-hosted style on AWS; path style under `endpoint_url` for
    S3-compatible stores.
    """
    path = "/".join(quote(segment, safe="-_.~") for segment in key.split("/"))
    if endpoint_url:
        return f"{endpoint_url.rstrip('/')}/{bucket}/{path}"
    return f"https://{bucket}.s3.{region}.amazonaws.com/{path}"


def _is_quoted(etag: str) -> bool:
    return len(etag) >= 2 and etag.startswith('"') and etag.endswith('"')


def normalize_etag(etag: str) -> str:
    return etag if _is_quoted(etag) else f'"{etag}"'


def allowed_metadata(metadata: Dict[str, Any], allowed_fields: Optional[Iterable[str]] = None) -> Dict[str, str]:
    """Metadata restricted to `allowed_fields` (all fields when None), values as strings"""
    if allowed_fields is None:
        return {name: str(value) for name, value in metadata.items()}
    allowed = set(allowed_fields)
    return {name: str(value) for name, value in metadata.items() if name in allowed}
