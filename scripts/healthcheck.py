from __future__ import annotations

import os
import sys

import httpx


def main() -> int:
    port = os.getenv("PORT", "8000")
    url = f"http://127.0.0.1:{port}/api/healthz"
    try:
        resp = httpx.get(url, timeout=2.0)
        data = resp.json()
    except (httpx.HTTPError, ValueError):
        return 1
    if resp.status_code != 200 or not data.get("ok"):
        for purpose, item in (data.get("databases") or {}).items():
            if not item.get("connected"):
                print(f"{purpose}: {item.get('error')}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
