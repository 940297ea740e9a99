#!/usr/bin/env python3
# Meterline CLI v1.0.0
# argparse. Operator access to the same core the API serves.

import argparse
import json
import os
import sys

from billing import BillingLedger
from db import DualWriteCoordinator, get_coordinator, set_coordinator
from errors import MeterlineError
from instances import InstanceLifecycle, log
from pricing import cents_to_dollars
from users import create_user


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_serve(args):
    """Run the HTTP API."""
    import uvicorn

    log.info("API STARTING on %s:%d", args.host, args.port)
    uvicorn.run("api:app", host=args.host, port=args.port)


def cmd_user_add(args):
    user = create_user(args.username, args.email, args.password_hash)
    print(f"User {user['id']} registered: {user['username']} <{user['email']}> eakey={user['eakey']}")


def cmd_instances(args):
    """List a user's instances."""
    instances = InstanceLifecycle().list_instances(args.user_id)
    if not instances:
        print("No instances.")
        return
    for i in instances:
        print(f"  [{i['status']:>8}] {i['id']} | {i['country_code']} {i['phone_number']}")


def cmd_instance_add(args):
    inst = InstanceLifecycle().create_instance(args.user_id, args.country, args.phone)
    print(f"Instance {inst['id']} created for user {inst['user_id']} ({inst['phone_number']})")


def cmd_activate(args):
    record = InstanceLifecycle().activate(args.instance_id)
    print(f"Instance {args.instance_id} active. Billing window {record['id']} opened.")


def cmd_deactivate(args):
    record = InstanceLifecycle().deactivate(args.instance_id)
    print(f"Instance {args.instance_id} inactive. Window {record['id']} closed: "
          f"{record['amount_cents']}c (${cents_to_dollars(record['amount_cents']):.2f})")


def cmd_billing(args):
    """Show a user's billing windows and totals."""
    summary = BillingLedger().summary(args.user_id)
    if args.json:
        _print(summary)
        return
    for r in summary["records"]:
        ended = r["ended_at"] if r["ended_at"] is not None else "open"
        print(f"  window {r['id']} | instance {r['instance_id']} | "
              f"{r['started_at']} -> {ended} | {r['amount_cents']}c")
    print(f"Billed: ${cents_to_dollars(summary['total_cents']):.2f}  "
          f"Open (est.): ${cents_to_dollars(summary['open_estimate_cents']):.2f}")


def cmd_account(args):
    ledger = BillingLedger()
    if args.refresh:
        ledger.refresh_hourly_average(args.user_id)
    _print(ledger.account_summary(args.user_id))


def cmd_reconcile(args):
    """Repair instances whose active flag disagrees with the ledger."""
    repairs = InstanceLifecycle().reconcile()
    if not repairs:
        print("Ledger consistent.")
    for r in repairs:
        print(f"  instance {r['instance_id']}: {r['action']} ({r['reason']})")


def cmd_status(args):
    coordinator = get_coordinator()
    _print({"health": coordinator.healthcheck(), "stats": coordinator.stats()})


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="meterline",
        description="Meterline: instance metering and billing",
    )
    parser.add_argument("--db", default=None, help="Primary SQLite path (overrides METERLINE_DB_PATH)")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")))
    p_serve.set_defaults(func=cmd_serve)

    p_uadd = sub.add_parser("user-add", help="Register a user")
    p_uadd.add_argument("--username", required=True)
    p_uadd.add_argument("--email", required=True)
    p_uadd.add_argument("--password-hash", required=True, help="Pre-hashed password")
    p_uadd.set_defaults(func=cmd_user_add)

    p_inst = sub.add_parser("instances", help="List a user's instances")
    p_inst.add_argument("user_id", type=int)
    p_inst.set_defaults(func=cmd_instances)

    p_iadd = sub.add_parser("instance-add", help="Provision an instance")
    p_iadd.add_argument("--user-id", type=int, required=True)
    p_iadd.add_argument("--country", required=True, help="ISO 3166-1 alpha-2 code")
    p_iadd.add_argument("--phone", required=True)
    p_iadd.set_defaults(func=cmd_instance_add)

    p_act = sub.add_parser("activate", help="Activate an instance")
    p_act.add_argument("instance_id", type=int)
    p_act.set_defaults(func=cmd_activate)

    p_deact = sub.add_parser("deactivate", help="Deactivate an instance")
    p_deact.add_argument("instance_id", type=int)
    p_deact.set_defaults(func=cmd_deactivate)

    p_bill = sub.add_parser("billing", help="Show billing windows for a user")
    p_bill.add_argument("user_id", type=int)
    p_bill.add_argument("--json", action="store_true")
    p_bill.set_defaults(func=cmd_billing)

    p_acct = sub.add_parser("account", help="Show a user's billing account")
    p_acct.add_argument("user_id", type=int)
    p_acct.add_argument("--refresh", action="store_true",
                        help="Recompute average hourly consumption first")
    p_acct.set_defaults(func=cmd_account)

    p_rec = sub.add_parser("reconcile", help="Run the ledger repair pass")
    p_rec.set_defaults(func=cmd_reconcile)

    p_stat = sub.add_parser("status", help="Storage health and mirror stats")
    p_stat.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.db:
        set_coordinator(DualWriteCoordinator(db_path=args.db))

    try:
        args.func(args)
    except MeterlineError as e:
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
