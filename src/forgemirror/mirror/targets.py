"""Translate inbound mirror paths into upstream source URLs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlsplit

from ..common.settings import DEFAULT_SOURCE_HOSTS
from .errors import InvalidPath, UnsupportedHost


USAGE_MESSAGE = (
    "Invalid path. Usage: /[github.com]/user/repo/path/to/file "
    "or /https://raw.githubusercontent.com/user/repo/ref/file"
)

# Some front proxies merge "//" in request paths, turning "/https://host" into "/https:/host".
_ABSOLUTE_URL = re.compile(r"^(https?):/+", re.IGNORECASE)


@dataclass(frozen=True)
class SourceTarget:
    host: str
    path: str
    full_url: str


def resolve_target(
    path: str,
    *,
    source_hosts: Iterable[str] = DEFAULT_SOURCE_HOSTS,
    primary_host: str = "github.com",
) -> SourceTarget:
    """Resolve ``path`` against the allow-listed hosts.

    Three forms are accepted, checked in order:

    * ``/https://raw.githubusercontent.com/user/repo/ref/file`` (absolute URL)
    * ``/gist.github.com/user/id`` (allow-listed host as first segment)
    * ``/user/repo/blob/main/file`` (bare path on ``primary_host``)

    Raises :class:`InvalidPath` for an empty or unparseable path and
    :class:`UnsupportedHost` for an absolute URL naming any other host.
    """
    allowed = {host.lower() for host in source_hosts}
    cleaned = path.strip("/")
    if not cleaned:
        raise InvalidPath(USAGE_MESSAGE)

    match = _ABSOLUTE_URL.match(cleaned)
    if match:
        return _resolve_absolute(f"{match.group(1).lower()}://{cleaned[match.end():]}", allowed)

    head, _, rest = cleaned.partition("/")
    if head.lower() in allowed:
        host = head.lower()
        target_path = f"/{rest}"
    else:
        host = primary_host.lower()
        target_path = f"/{cleaned}"
    if host not in allowed:
        raise UnsupportedHost(host)
    return SourceTarget(host=host, path=target_path, full_url=f"https://{host}{target_path}")


def _resolve_absolute(url: str, allowed: set[str]) -> SourceTarget:
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        # Accessing .port validates the authority section.
        parts.port
    except ValueError as exc:
        raise InvalidPath(USAGE_MESSAGE) from exc
    if not hostname:
        raise InvalidPath(USAGE_MESSAGE)
    if hostname not in allowed or parts.username or parts.password or parts.port:
        raise UnsupportedHost(parts.netloc)

    target_path = parts.path or "/"
    if parts.query:
        target_path += f"?{parts.query}"
    if parts.fragment:
        target_path += f"#{parts.fragment}"
    return SourceTarget(host=hostname, path=target_path, full_url=f"https://{hostname}{target_path}")
