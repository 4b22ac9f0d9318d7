#!/usr/bin/env python3
"""CLI utility to verify that Anthropic API keys authenticate and have credits."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional, Sequence

from consensus_extractor.config import DEFAULT_ENV_FILE
from consensus_extractor.sampling import API_KEY_ENV_VAR
from consensus_extractor.utils.api_keys import APIKeyCheckResult, check_api_key, discover_keys


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments for the key check utility.

    Returns:
        argparse.Namespace: Parsed command line arguments.
    """
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "keys",
        nargs="*",
        help=f"Keys to test (default: {API_KEY_ENV_VAR} or sk-ant- keys found in .env)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Request timeout in seconds (default: 30.0)",
    )
    return parser.parse_args(argv)


def _print_result(result: APIKeyCheckResult, index: int) -> None:
    print(f"\nKey {index + 1}: {result.masked}")
    print(f"   Status: {result.status}")
    if result.model:
        print(f"   Model: {result.model}")
    if not (result.valid and result.has_credits):
        print(f"   Error: {result.detail}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the CLI key check utility.

    Returns:
        int: Exit status code where ``0`` indicates at least one working key.
    """
    logging.basicConfig(level=logging.WARNING, format="[%(levelname)s] %(message)s")
    args = parse_args(argv)

    keys = discover_keys(args.keys, os.getenv(API_KEY_ENV_VAR), DEFAULT_ENV_FILE)
    if not keys:
        print("No API keys found.", file=sys.stderr)
        print("Pass keys as arguments or set " + API_KEY_ENV_VAR, file=sys.stderr)
        return 1

    print(f"Testing {len(keys)} API key(s)...")
    results: List[APIKeyCheckResult] = []
    for index, key in enumerate(keys):
        result = check_api_key(key, timeout=args.timeout)
        results.append(result)
        _print_result(result, index)

    working = [result for result in results if result.valid and result.has_credits]
    no_credits = sum(1 for result in results if result.valid and not result.has_credits)
    invalid = sum(1 for result in results if not result.valid)
    print("\n" + "=" * 50)
    print(f"Summary: {len(working)} working, {no_credits} no credits, {invalid} invalid")
    if working:
        print(f"\nWorking key: {working[0].masked}")
        return 0
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
