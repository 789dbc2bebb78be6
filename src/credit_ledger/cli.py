"""
Credit Ledger CLI

Operator front-end over the ledger engine.

Commands:
  balance  - Show a user's balance and expiration
  credit   - Add credits (purchase, bonus, refund)
  debit    - Spend credits
  grant    - Grant the monthly plan allotment if not yet granted
  history  - List ledger entries, newest first
  split    - Compute the platform/creator split of a sale
  usage    - Show plan usage counters for the current period
"""

import argparse
import json
import logging
import os
import sys
import structlog

from .core.errors import LedgerError
from .persistence.models import RelatedEntity, TransactionType, utc_now


def configure_logging(verbose: bool = False):
    """Send log events to stderr so stdout stays clean for --json output."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.WARNING),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def _load_catalog(args):
    from .billing.plans import InMemorySubscriptionCatalog, calendar_month_period

    path = args.catalog or os.environ.get("PLAN_CATALOG_PATH")
    catalog = InMemorySubscriptionCatalog.from_json(path) if path else InMemorySubscriptionCatalog()

    if getattr(args, "role", None):
        catalog.set_user_role(args.user, args.role)
    if getattr(args, "plan", None):
        # Each run rebuilds the catalog; anchoring the period keeps repeated runs in one period
        period_start, _ = calendar_month_period(utc_now())
        catalog.subscribe(args.user, args.plan, period_start=period_start)
    return catalog


def _engine(args):
    from .core.balance import BalanceEngine
    from .persistence.database import get_database

    return BalanceEngine(get_database(args.database))


def _related(args):
    if args.related_id:
        return RelatedEntity(args.related_id, args.related_type or "manual")
    return None


def cmd_balance(args):
    """Show a user's balance."""
    snapshot = _engine(args).get_balance(args.user)

    if args.json:
        print(json.dumps(snapshot.to_dict(), indent=2))
        return

    print(f"User: {snapshot.user_id}")
    print(f"  Balance: {snapshot.amount} credits")
    if snapshot.expires_at:
        print(f"  Expires: {snapshot.expires_at.date()} ({snapshot.expires_in_days} days)")
    if snapshot.expired_amount:
        print(f"  Expired just now: {snapshot.expired_amount} credits")


def cmd_credit(args):
    """Add credits to a user."""
    balance = _engine(args).credit(
        args.user,
        args.amount,
        args.description,
        _related(args),
        TransactionType(args.type),
    )
    print(f"Added {args.amount} credits to {args.user}. Balance: {balance}")


def cmd_debit(args):
    """Spend credits."""
    result = _engine(args).debit(args.user, args.amount, args.description, _related(args))
    print(f"Debited {result.amount} credits from {args.user}. Balance: {result.balance}")
    print(f"  Transaction: {result.transaction_id}")


def cmd_grant(args):
    """Grant monthly credits."""
    from .core.entitlement import EntitlementGrantor

    engine = _engine(args)
    grantor = EntitlementGrantor(engine=engine, catalog=_load_catalog(args))
    result = grantor.ensure_monthly_credits(args.user)

    if result.granted:
        print(f"Granted {result.amount} credits ({result.period.plan.display_name}). Balance: {result.balance}")
    else:
        print(f"Nothing to grant for period starting {result.period.period_start.date()}. Balance: {result.balance}")


def cmd_history(args):
    """List ledger entries."""
    records = _engine(args).get_transactions(args.user, limit=args.limit, offset=args.offset)

    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        print(f"No transactions for {args.user}")
        return

    for record in records:
        print(
            f"{record.created_at.isoformat()}  {record.type.value:<20} "
            f"{record.amount:>+6}  {record.description or ''}"
        )


def cmd_split(args):
    """Compute a sale split."""
    from .billing.split import calculate_split

    result = calculate_split(args.amount, args.rate)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    print(f"Gross: {result.gross_amount} ({result.gross_cents} cents)")
    print(f"  Platform fee: {result.platform_fee} ({result.platform_fee_cents} cents)")
    print(f"  Creator amount: {result.creator_amount} ({result.creator_amount_cents} cents)")
    print(f"  Commission rate: {result.commission_rate}")


def cmd_usage(args):
    """Show plan usage for the current period."""
    from .billing.usage_limiter import UsageLimiter
    from .persistence.database import get_database

    limiter = UsageLimiter(get_database(args.database), catalog=_load_catalog(args))
    status = limiter.get_usage_status(args.user).to_dict()

    if args.json:
        print(json.dumps(status, indent=2))
        return

    print(f"Usage for {args.user} ({status['plan_id']})")
    print("=" * 40)
    print(f"Period: {status['period_start'][:10]} - {status['period_end'][:10]}")
    for action, counts in status["usage"].items():
        print(f"  {action}: {counts['used']} / {counts['limit']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credit-ledger",
        description="Credit Ledger - balances, entitlements and usage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database", help="Database URL (default: DATABASE_URL)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug events to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def user_command(name, help_text):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("user", help="User ID")
        return sub

    def catalog_options(sub):
        sub.add_argument("--catalog", help="Plan catalog JSON (default: PLAN_CATALOG_PATH)")
        sub.add_argument("--role", choices=["creator", "student"], help="Role used for the free plan")
        sub.add_argument("--plan", help="Subscribe the user to this plan first")

    def related_options(sub):
        sub.add_argument("--related-id", help="Related entity ID")
        sub.add_argument("--related-type", help="Related entity type")

    # balance
    balance_parser = user_command("balance", "Show balance")
    balance_parser.add_argument("--json", action="store_true")

    # credit
    credit_parser = user_command("credit", "Add credits")
    credit_parser.add_argument("amount", type=int)
    credit_parser.add_argument("--description", default="Manual credit")
    credit_parser.add_argument(
        "--type",
        default=TransactionType.PURCHASE.value,
        choices=sorted(t.value for t in TransactionType if t.is_credit),
    )
    related_options(credit_parser)

    # debit
    debit_parser = user_command("debit", "Spend credits")
    debit_parser.add_argument("amount", type=int)
    debit_parser.add_argument("--description", default="Manual debit")
    related_options(debit_parser)

    # grant
    grant_parser = user_command("grant", "Grant monthly credits")
    catalog_options(grant_parser)

    # history
    history_parser = user_command("history", "List transactions")
    history_parser.add_argument("--limit", type=int, default=50)
    history_parser.add_argument("--offset", type=int, default=0)
    history_parser.add_argument("--json", action="store_true")

    # split
    split_parser = subparsers.add_parser("split", help="Compute a sale split")
    split_parser.add_argument("amount", help="Gross amount, e.g. 19.99")
    split_parser.add_argument("rate", help="Commission rate, e.g. 0.15")
    split_parser.add_argument("--json", action="store_true")

    # usage
    usage_parser = user_command("usage", "Show plan usage")
    catalog_options(usage_parser)
    usage_parser.add_argument("--json", action="store_true")

    return parser


COMMANDS = {
    "balance": cmd_balance,
    "credit": cmd_credit,
    "debit": cmd_debit,
    "grant": cmd_grant,
    "history": cmd_history,
    "split": cmd_split,
    "usage": cmd_usage,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except (LedgerError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
