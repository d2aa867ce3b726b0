#!/usr/bin/env python3
"""Run the share links API with explicit args (avoids shell interpolation)."""
from __future__ import annotations

import argparse

import uvicorn


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action=argparse.BooleanOptionalAction, default=False)
    parser.add_argument("--log-level", default="info")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    uvicorn.run(
        "share_links.app.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        # Share tokens live in public URL paths; request logging is done by
        # the app with normalized paths instead.
        access_log=False,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
