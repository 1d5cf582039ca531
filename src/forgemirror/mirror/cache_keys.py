"""Versioned cache keys.

A key is the inbound request URL with two extra query parameters:

``__v``
    Validator derived from the upstream ETag, or the UTC date (``YYYYMMDD``)
    when no validator is known. Date keys roll over at UTC midnight, which
    retires every unvalidated entry without a purge.
``__enc``
    ``br`` or ``gzip`` depending on what the client accepts, so differently
    encoded bodies never share a key.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import httpx


VERSION_PARAM = "__v"
ENCODING_PARAM = "__enc"
MAX_VALIDATOR_LENGTH = 32


def cache_version(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y%m%d")


def encoding_tag(accept_encoding: Optional[str]) -> Optional[str]:
    if not accept_encoding:
        return None
    if "br" in accept_encoding:
        return "br"
    if "gzip" in accept_encoding:
        return "gzip"
    return None


def build_cache_key(
    url: str,
    accept_encoding: Optional[str],
    version: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> str:
    key_url = httpx.URL(url).copy_set_param(VERSION_PARAM, version or cache_version(now))
    encoding = encoding_tag(accept_encoding)
    if encoding:
        key_url = key_url.copy_set_param(ENCODING_PARAM, encoding)
    return str(key_url)


def normalize_validator(etag: Optional[str]) -> Optional[str]:
    """``W/"abc"`` and ``"abc"`` both become ``abc``, capped at 32 characters."""
    if not etag:
        return None
    value = etag.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.replace('"', "")[:MAX_VALIDATOR_LENGTH]
    return value or None
