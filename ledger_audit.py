"""Command-line audit of savings fund balances against their ledger entries."""

import logging
import sys
from typing import Optional

import click

from amounts import format_cents
from config import get_settings
from database import session_scope
from services import audit_all_funds

logger = logging.getLogger(__name__)


@click.command()
@click.option("--user-id", type=int, default=None, help="Only audit this user's funds.")
def main(user_id: Optional[int]) -> None:
    """Compare each fund's stored balance with the sum of its entries.

    Read-only: mismatches are reported and the command exits with status 1,
    nothing is repaired.
    """
    logging.basicConfig(level=get_settings().log_level)
    with session_scope() as session:
        audits = audit_all_funds(session, user_id=user_id)

    mismatched = 0
    for audit in audits:
        marker = "ok" if audit.consistent else "MISMATCH"
        if not audit.consistent:
            mismatched += 1
        click.echo(
            f"fund={audit.fund_id} user={audit.user_id} "
            f"balance={format_cents(audit.balance_cents)} "
            f"ledger={format_cents(audit.ledger_cents)} {marker}"
        )
    logger.info(f"ledger_audit: funds={len(audits)} mismatched={mismatched}")
    click.echo(f"{len(audits)} funds audited, {mismatched} mismatched")
    sys.exit(1 if mismatched else 0)


if __name__ == "__main__":
    main()
