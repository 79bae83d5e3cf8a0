from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Custom Service Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=None, help="Basic auth user")
    p.add_argument("--password", default=None, help="Basic auth password")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("resources", help="List custom resources")
    sub.add_parser("stats", help="Show reconciler execution count")

    s_ch = sub.add_parser("children", help="List child resources")
    s_ch.add_argument("--namespace", default=None)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_apply = sub.add_parser("apply", help="Create/update a custom resource")
    s_apply.add_argument("--namespace", default="default")
    s_apply.add_argument("--name", required=True)
    s_apply.add_argument("--child-name", required=True)
    s_apply.add_argument("--key", required=True)
    s_apply.add_argument("--value", default="")

    s_del = sub.add_parser("delete", help="Delete a custom resource and its child")
    s_del.add_argument("--namespace", default="default")
    s_del.add_argument("--name", required=True)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.user and args.password else None

    if args.cmd == "resources":
        _print(requests.get(f"{base}/resources", auth=auth, timeout=10).json())
        return 0

    if args.cmd == "stats":
        _print(requests.get(f"{base}/stats", auth=auth, timeout=10).json())
        return 0

    if args.cmd == "children":
        params = {"namespace": args.namespace} if args.namespace else None
        _print(requests.get(f"{base}/children", params=params, auth=auth, timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, auth=auth, timeout=10).json())
        return 0

    if args.cmd == "apply":
        payload = {"child_name": args.child_name, "key": args.key, "value": args.value}
        r = requests.put(f"{base}/resources/{args.namespace}/{args.name}", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}/resources/{args.namespace}/{args.name}", auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
