"""Administrative commands for the billing plan catalog.

    subtrack-billing-admin setup-prices
    subtrack-billing-admin deactivate-plan plan_enterprise
"""
import argparse
import logging
from typing import List, Optional

from dotenv import load_dotenv

from subtrack.app.billing import ProcessorError
from subtrack.app.services.billing import BillingComponents, build_billing_components, setup_processor_prices
from subtrack.config import load_billing_config
from subtrack.main import configure_logging

logger = logging.getLogger("billing")


def setup_prices(components: BillingComponents, args: argparse.Namespace) -> int:
    try:
        resolved = setup_processor_prices(components, overwrite=args.overwrite)
    except ProcessorError as exc:
        print(f"Price setup failed: {exc.message}")
        return 1
    for slug, refs in sorted(resolved.items()):
        print(f"{slug}: monthly={refs.get('monthly', '-')} yearly={refs.get('yearly', '-')}")
    return 0


def deactivate_plan(components: BillingComponents, args: argparse.Namespace) -> int:
    try:
        plan = components.catalog.deactivate(args.plan_id)
    except KeyError:
        print(f"Unknown plan: {args.plan_id}")
        return 1
    print(f"Deactivated {plan.id} ({plan.slug}).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="subtrack-billing-admin")
    commands = parser.add_subparsers(dest="command", required=True)

    prices = commands.add_parser("setup-prices", help="create processor prices for paid plans")
    prices.add_argument("--overwrite", action="store_true", help="re-resolve prices that are already set")
    prices.set_defaults(handler=setup_prices)

    deactivate = commands.add_parser("deactivate-plan", help="hide a plan from new subscriptions")
    deactivate.add_argument("plan_id")
    deactivate.set_defaults(handler=deactivate_plan)
    return parser


def main(argv: Optional[List[str]] = None, components: Optional[BillingComponents] = None) -> int:
    args = build_parser().parse_args(argv)
    if components is None:
        load_dotenv()
        config = load_billing_config()
        configure_logging(config.log_level)
        components = build_billing_components(config)
    return args.handler(components, args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
