from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Control-Plane Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=os.getenv("CPR_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("CPR_ADMIN_PASSWORD", "admin"))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("fleets", help="List fleets")

    s_st = sub.add_parser("status", help="Show a fleet and its replicas")
    s_st.add_argument("--fleet", required=True)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--fleet")

    s_reg = sub.add_parser("register", help="Register/update a fleet")
    s_reg.add_argument("--fleet", required=True)
    s_reg.add_argument("--version", required=True)
    s_reg.add_argument("--replicas", type=int, default=3)
    s_reg.add_argument("--strategy", default="InPlace", choices=["InPlace", "Recreate"])
    s_reg.add_argument("--worker-enabled", action="store_true")
    s_reg.add_argument("--failure-domain", action="append", default=[], dest="failure_domains")
    s_reg.add_argument("--api-url")

    s_h = sub.add_parser("report-health", help="Report a replica health-check result")
    s_h.add_argument("--fleet", required=True)
    s_h.add_argument("--replica", required=True)
    s_h.add_argument("--unhealthy", action="store_true")
    s_h.add_argument("--message", default="")

    s_rec = sub.add_parser("reconcile", help="Run one reconciliation pass now")
    s_rec.add_argument("--fleet", required=True)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "fleets":
        _print(requests.get(f"{base}/fleets", timeout=10).json())
        return 0

    if args.cmd == "status":
        r = requests.get(f"{base}/fleets/{args.fleet}", timeout=10)
        if not r.ok:
            _print(r.json())
            return 1
        out = r.json()
        out["replicas"] = requests.get(f"{base}/fleets/{args.fleet}/replicas", timeout=10).json()
        _print(out)
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.fleet:
            params["fleet"] = args.fleet
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "register":
        payload = {
            "name": args.fleet,
            "version": args.version,
            "replicas": args.replicas,
            "update_strategy": args.strategy,
            "worker_enabled": args.worker_enabled,
            "failure_domains": args.failure_domains,
            "api_url": args.api_url,
        }
        r = requests.post(f"{base}/fleets", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "report-health":
        payload = {"healthy": not args.unhealthy, "message": args.message}
        r = requests.post(
            f"{base}/fleets/{args.fleet}/replicas/{args.replica}/health", json=payload, auth=auth, timeout=10
        )
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "reconcile":
        # The pass may wait for the external address.
        r = requests.post(f"{base}/fleets/{args.fleet}/reconcile", auth=auth, timeout=300)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
