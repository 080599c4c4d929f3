"""Sanity check for local dev Python environment."""

from __future__ import annotations

import sys

REQUIRED = ("uvicorn", "fastapi", "yaml", "jsonschema", "jwt", "bson")


def main() -> int:
    print("Python executable:", sys.executable)
    missing = []
    for module in REQUIRED:
        try:
            __import__(module)
        except ImportError as exc:  # pragma: no cover - dev-only script
            print(f"FAILED: {module} import error:", repr(exc))
            missing.append(module)

    if missing:
        return 1
    print("OK: all runtime dependencies are installed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
