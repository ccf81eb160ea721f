#!/usr/bin/env python3
"""
Audit (and optionally repair) subscription records against Stripe.

Reports, for every customer_subscriptions row (or a single user):
1. Paid records without a Stripe customer id
2. Subscription ids Stripe no longer knows about
3. Stored status that disagrees with Stripe
4. Paid records without a subscription id

Run with --fix to repair, or --simulate to log the repairs without writing.
--sweep also runs the expired-cancellation sweep.
"""
import os
import sys

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dream_billing.config import Config
from dream_billing.config.logging_config import configure_logging
from dream_billing.services.startup import build_services


def main():
    """Main execution function."""
    import argparse

    parser = argparse.ArgumentParser(description="Reconcile subscription records with Stripe")
    parser.add_argument("--fix", action="store_true", help="Apply repairs (default is report-only)")
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Log the repairs that --fix would apply without writing anything",
    )
    parser.add_argument("--user-id", metavar="USER_ID", help="Only check this user")
    parser.add_argument("--sweep", action="store_true", help="Also cancel expired grace periods")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "INFO")
    Config.validate()

    services = build_services()
    try:
        report = services.reconciliation.audit(fix=args.fix, simulate=args.simulate, user_id=args.user_id)

        print("=" * 80)
        print(f"SUBSCRIPTION AUDIT ({report.mode.upper()})")
        print("=" * 80)
        print(f"Records examined: {report.examined}")
        print(f"Issues found:     {len(report.issues)}")
        print(f"Issues fixed:     {report.fixed}")
        print(f"Records failed:   {report.failed}")
        for issue in report.issues:
            marker = "fixed" if issue.applied else "open"
            print(f"  [{marker}] {issue.user_id} {issue.issue}: {issue.detail}")
            if issue.action and not issue.applied:
                print(f"          -> {issue.action}")

        if args.sweep:
            if args.simulate or not args.fix:
                print("\nSweep skipped (requires --fix without --simulate)")
            else:
                sweep = services.reconciliation.run_sweep()
                print(
                    f"\nSweep: examined={sweep.examined} transitioned={sweep.transitioned} "
                    f"skipped={sweep.skipped} failed={sweep.failed}"
                )

        return 1 if report.failed else 0

    except Exception as e:
        print(f"\nError during reconciliation: {e}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        services.connection.close()


if __name__ == "__main__":
    sys.exit(main())
