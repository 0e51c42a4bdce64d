#!/usr/bin/env python
"""
Run the subscription expiry sweep once.

Usage:
    python -m entitlements.scripts.run_sweep
"""
from __future__ import annotations

import argparse
import logging

from ..services.sweeper import expire_lapsed_subscriptions


def main():
    parser = argparse.ArgumentParser(
        description="Expire lapsed subscriptions and downgrade their owners"
    )
    parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    count = expire_lapsed_subscriptions()
    print(f"Expired {count} subscription(s)")


if __name__ == "__main__":
    main()
