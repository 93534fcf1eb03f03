"""Ask the order service to poll the gateway for one or more orders now."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for operator payment checks."""

    parser = argparse.ArgumentParser(description="Reconcile orders against their payment gateway.")
    parser.add_argument("order_ids", nargs="+")
    parser.add_argument("--orders-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    args = parser.parse_args()

    results = []
    with httpx.Client(timeout=30.0, headers={"x-api-key": args.api_key}) as client:
        for order_id in args.order_ids:
            resp = client.post(f"{args.orders_url}/orders/{order_id}/reconcile")
            if resp.status_code != 200:
                results.append({"order_id": order_id, "error": resp.json().get("detail", resp.text)})
                continue
            results.append(resp.json())
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
