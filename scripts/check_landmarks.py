#!/usr/bin/env python3
"""
Sanity-check every landmark file of a directory.

Prints one line per file and exits non-zero when any file fails.

Usage:
  python scripts/check_landmarks.py data/landmarks [--bound 250]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from facebio.landmarks import check_directory


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("directory", type=Path)
    ap.add_argument("--bound", type=float, default=250.0,
                    help="Largest allowed absolute coordinate (default: 250)")
    args = ap.parse_args()

    try:
        results = check_directory(args.directory, args.bound)
    except FileNotFoundError as exc:
        print(exc)
        return 1
    if not results:
        print("No landmark files found in", args.directory)
        return 1

    failed = [name for name, ok in results.items() if not ok]
    for name, ok in results.items():
        print(f"{'OK  ' if ok else 'FAIL'} {name}")
    print(f"{len(results) - len(failed)}/{len(results)} landmark files passed")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
