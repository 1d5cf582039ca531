"""Mirror components: path resolution, cache policy, keys, upstream fetches and stores."""

from .cache_keys import build_cache_key, cache_version, normalize_validator
from .errors import InvalidPath, MethodNotAllowed, UnsupportedHost, UpstreamTimeout, UpstreamUnavailable
from .fetcher import ResilientFetcher, UpstreamResponse
from .policy import CachePolicy, PolicyRules, classify
from .store import CachedEntry, CacheWriter, DiskResponseStore, MemoryResponseStore, ResponseStore
from .targets import SourceTarget, resolve_target

__all__ = [
    "CachePolicy",
    "CachedEntry",
    "CacheWriter",
    "DiskResponseStore",
    "InvalidPath",
    "MemoryResponseStore",
    "MethodNotAllowed",
    "PolicyRules",
    "ResilientFetcher",
    "ResponseStore",
    "SourceTarget",
    "UnsupportedHost",
    "UpstreamResponse",
    "UpstreamTimeout",
    "UpstreamUnavailable",
    "build_cache_key",
    "cache_version",
    "classify",
    "normalize_validator",
    "resolve_target",
]
