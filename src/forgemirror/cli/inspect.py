"""CLI to show how the mirror would treat a request path, without any network access."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Optional, Sequence

from ..common.settings import MirrorSettings
from ..mirror.cache_keys import build_cache_key, normalize_validator
from ..mirror.errors import PathResolutionError
from ..mirror.policy import PolicyRules, classify
from ..mirror.targets import resolve_target


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resolve a mirror path and print its cache policy")
    parser.add_argument("path", help="Request path, e.g. /octocat/Hello-World/main/README.md")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8080",
        help="Public mirror URL used to build cache keys (default: http://localhost:8080)",
    )
    parser.add_argument("--accept-encoding", default="", help="Client Accept-Encoding header value")
    parser.add_argument("--validator", default=None, help="Upstream ETag to preview the validator-based key")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of plain text")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = MirrorSettings()
    path = args.path if args.path.startswith("/") else f"/{args.path}"

    try:
        target = resolve_target(path, source_hosts=settings.source_hosts, primary_host=settings.primary_host)
    except PathResolutionError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    policy = classify(target.path, PolicyRules.from_settings(settings))
    request_url = args.base_url.rstrip("/") + path
    report = {
        "host": target.host,
        "path": target.path,
        "target": target.full_url,
        "policy": policy.label,
        "edge_ttl": policy.edge_ttl,
        "browser_ttl": policy.browser_ttl,
        "use_validator": policy.use_validator,
        "cache_key": build_cache_key(request_url, args.accept_encoding),
    }
    validator = normalize_validator(args.validator)
    if validator and policy.use_validator:
        report["validator"] = validator
        report["final_cache_key"] = build_cache_key(request_url, args.accept_encoding, validator)

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        for name, value in report.items():
            print(f"{name.replace('_', ' ').capitalize()}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
