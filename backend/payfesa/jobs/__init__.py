from __future__ import annotations

import json
from datetime import datetime

import click


def register_commands(app) -> None:
    @app.cli.command("settle-payouts")
    @click.option("--date", "run_date", default=None, help="Settlement date (YYYY-MM-DD), defaults to today.")
    @click.option("--cutoff", default=None, help="Cutoff time (HH:MM[:SS]), defaults to PAYOUT_CUTOFF_TIME.")
    @click.option("--workers", type=int, default=None, help="Worker pool size, defaults to SETTLEMENT_MAX_WORKERS.")
    def settle_payouts(run_date, cutoff, workers):
        """Run the scheduled settlement batch once."""
        from payfesa.jobs.settlement_runner import run_scheduled_settlement

        today = datetime.strptime(run_date, "%Y-%m-%d").date() if run_date else None
        click.echo(json.dumps(run_scheduled_settlement(today=today, cutoff=cutoff, max_workers=workers)))

    @app.cli.command("verify-payouts")
    @click.option("--older-than", "older_than", type=int, default=15, help="Only payouts in flight at least this many minutes.")
    @click.option("--limit", type=int, default=100)
    def verify_payouts(older_than, limit):
        """Poll the gateway for payouts still in processing."""
        from payfesa.jobs.payout_verifier import verify_processing_payouts

        click.echo(json.dumps(verify_processing_payouts(older_than_minutes=older_than, limit=limit)))

    @app.cli.command("reconcile-balances")
    @click.option("--limit", type=int, default=500)
    def reconcile_balances(limit):
        """Compare stored escrow balances with the transaction records; reports, never corrects."""
        from payfesa.jobs.balance_reconciler import reconcile_balances as run

        click.echo(json.dumps(run(limit=limit)))
