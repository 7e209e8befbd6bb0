#!/usr/bin/env python
"""Warm the pet cache for one asset id without starting the HTTP server."""

from __future__ import annotations

import argparse
import logging
import os
import sys


REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from petcache.config import ConfigManager
from petcache.errors import PetCacheError
from petcache.server import server_from_config


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description=__doc__)
    ap.add_argument("asset_id", type=int)
    ap.add_argument("--url", help="remote URL (defaults to the configured origin)")
    ap.add_argument("--cache-dir", help="override the configured cache directory")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(name)s - %(levelname)s - %(message)s')

    config = ConfigManager()
    if args.cache_dir:
        config.config["cache_dir"] = args.cache_dir
    server = server_from_config(config)
    url = args.url or server.fetcher.url_for(args.asset_id)

    try:
        print(server.prefetch(args.asset_id, url))
    except PetCacheError as e:
        print(f"prefetch failed: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
