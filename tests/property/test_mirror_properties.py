"""Property-based tests for path resolution, classification and cache keys."""

from __future__ import annotations

from datetime import datetime, timezone

from hypothesis import given, strategies as st

from forgemirror.common.settings import DEFAULT_SOURCE_HOSTS
from forgemirror.mirror.cache_keys import build_cache_key
from forgemirror.mirror.policy import VOLATILE_MARKERS, classify
from forgemirror.mirror.targets import resolve_target


segment = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-_", min_size=1, max_size=12)
paths = st.lists(segment, min_size=1, max_size=6).map(lambda parts: "/" + "/".join(parts))
hosts = st.sampled_from(DEFAULT_SOURCE_HOSTS)
FIXED = datetime(2024, 6, 1, tzinfo=timezone.utc)


@given(hosts, paths)
def test_host_prefix_and_absolute_forms_agree(host: str, path: str) -> None:
    prefixed = resolve_target(f"/{host}{path}")
    absolute = resolve_target(f"/https://{host}{path}")
    assert prefixed == absolute
    assert prefixed.full_url == f"https://{host}{path}"


@given(paths)
def test_bare_paths_land_on_primary_host(path: str) -> None:
    target = resolve_target(path)
    if path.split("/")[1] in DEFAULT_SOURCE_HOSTS:
        return
    assert target.host == "github.com"
    assert target.path == path


@given(paths, st.sampled_from(VOLATILE_MARKERS), st.sampled_from(["/v1.2/", "/tags/", "/3.0.1/"]), paths)
def test_volatile_marker_always_wins(prefix: str, marker: str, version: str, suffix: str) -> None:
    assert classify(prefix + marker + version.strip("/") + suffix).label == "dynamic"


@given(
    st.integers(min_value=0, max_value=99),
    st.integers(min_value=0, max_value=99),
    st.lists(st.sampled_from(["docs", "src", "bin", "pkg"]), max_size=3),
)
def test_semver_segments_are_versioned(major: int, minor: int, rest: list[str]) -> None:
    path = "/".join(["", "octocat", "tool", f"v{major}.{minor}", *rest, "file.txt"])
    assert classify(path).label == "versioned"


@given(paths, st.sampled_from(["", "gzip", "br", "gzip, deflate, br"]))
def test_cache_keys_are_deterministic(path: str, encoding: str) -> None:
    url = f"http://mirror.test{path}"
    assert build_cache_key(url, encoding, now=FIXED) == build_cache_key(url, encoding, now=FIXED)


@given(paths, paths)
def test_distinct_paths_never_share_a_key(first: str, second: str) -> None:
    if first == second:
        return
    assert build_cache_key(f"http://mirror.test{first}", "br", now=FIXED) != build_cache_key(
        f"http://mirror.test{second}", "br", now=FIXED
    )
