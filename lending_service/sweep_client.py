"""
Cron-side trigger for the overdue sweep.

The service has no scheduler of its own; a cron job runs ``lending-sweep``
which posts to ``/api/loans/update-overdue`` as a librarian account.
"""

import argparse
import logging
import os

import requests

from .config import Config

logger = logging.getLogger(__name__)


class SweepFailed(RuntimeError):
    pass


def trigger_overdue_sweep(base_url, api_key, librarian_id, timeout=10):
    """Run the sweep remotely and return how many loans became overdue."""
    url = f"{base_url.rstrip('/')}/api/loans/update-overdue"
    try:
        resp = requests.post(
            url,
            headers={"X-API-Key": api_key, "X-User-Id": str(librarian_id)},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise SweepFailed(f"Could not reach lending service at {url}: {e}") from e

    if resp.status_code != 200:
        raise SweepFailed(f"Lending service returned {resp.status_code}: {resp.text}")

    count = int(resp.json()["updated_count"])
    logger.info("Overdue sweep via %s -> updated_count=%s", url, count)
    return count


def main(argv=None):
    parser = argparse.ArgumentParser(description="Mark past-due loans as overdue.")
    parser.add_argument("--base-url", default=Config.LENDING_BASE_URL)
    parser.add_argument("--api-key", default=Config.SERVICE_API_KEY)
    parser.add_argument(
        "--librarian-id",
        type=int,
        default=int(os.getenv("SWEEP_LIBRARIAN_ID", "1")),
    )
    parser.add_argument("--timeout", type=float, default=10)
    args = parser.parse_args(argv)

    logging.basicConfig(level=Config.LOG_LEVEL)
    try:
        count = trigger_overdue_sweep(
            args.base_url, args.api_key, args.librarian_id, timeout=args.timeout
        )
    except SweepFailed as e:
        logger.error("Overdue sweep failed: %s", e)
        return 1
    print(f"updated_count={count}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
