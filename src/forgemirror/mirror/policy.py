"""Path-based cache policy selection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from ..common.settings import MirrorSettings


PolicyLabel = Literal["dynamic", "versioned", "default"]

VOLATILE_MARKERS = ("/latest/", "/nightly/", "/master/", "/main/")
VERSIONED_PATTERNS = (
    re.compile(r"/v?\d+\.\d+(\.\d+)?/"),
    re.compile(r"/tags?/"),
    re.compile(r"/releases/download/v?\d+"),
)


@dataclass(frozen=True)
class CachePolicy:
    edge_ttl: int
    browser_ttl: int
    use_validator: bool
    label: PolicyLabel

    def cache_control(self, stale_while_revalidate: int) -> str:
        return (
            f"public, max-age={self.browser_ttl}, s-maxage={self.edge_ttl}, "
            f"stale-while-revalidate={stale_while_revalidate}"
        )


@dataclass(frozen=True)
class PolicyRules:
    dynamic: CachePolicy = CachePolicy(edge_ttl=3600, browser_ttl=300, use_validator=True, label="dynamic")
    versioned: CachePolicy = CachePolicy(edge_ttl=2592000, browser_ttl=86400, use_validator=False, label="versioned")
    default: CachePolicy = CachePolicy(edge_ttl=86400, browser_ttl=3600, use_validator=True, label="default")

    @classmethod
    def from_settings(cls, settings: MirrorSettings) -> "PolicyRules":
        return cls(
            dynamic=CachePolicy(settings.dynamic_edge_ttl, settings.dynamic_browser_ttl, True, "dynamic"),
            versioned=CachePolicy(settings.versioned_edge_ttl, settings.versioned_browser_ttl, False, "versioned"),
            default=CachePolicy(settings.default_edge_ttl, settings.default_browser_ttl, True, "default"),
        )


DEFAULT_RULES = PolicyRules()


def is_volatile(path: str) -> bool:
    return any(marker in path for marker in VOLATILE_MARKERS)


def is_versioned(path: str) -> bool:
    return any(pattern.search(path) for pattern in VERSIONED_PATTERNS)


def classify(path: str, rules: PolicyRules = DEFAULT_RULES) -> CachePolicy:
    """Pick the cache policy for an upstream path.

    Volatile branch names win over version-looking segments, so
    ``/user/repo/main/v1.2/file`` is still ``dynamic``.
    """
    if is_volatile(path):
        return rules.dynamic
    if is_versioned(path):
        return rules.versioned
    return rules.default
