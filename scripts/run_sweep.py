"""Trigger one scheduled sweep on a running order service and print its report."""

import argparse
import json

import httpx


SWEEPS = ("auto_review", "payment_reminder", "gateway_poll")


def main() -> None:
    """CLI entrypoint for manual sweep runs."""

    parser = argparse.ArgumentParser(description="Run an order sweep outside its schedule.")
    parser.add_argument("sweep", choices=SWEEPS)
    parser.add_argument("--orders-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.orders_url}/sweeps/{args.sweep}",
        headers={"x-api-key": args.api_key},
        timeout=120.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
