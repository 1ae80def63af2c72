"""
SessionPay CLI — delegated recurring charges.

Commands:
    sessionpay grant create     Issue a grant and its session key
    sessionpay grant activate   Activate a grant once the payer approved it
    sessionpay grant revoke     Cancel a grant
    sessionpay grant show       Show one subscription
    sessionpay grant list       List subscriptions
    sessionpay charge           Charge one subscription if due
    sessionpay sweep            Charge every due subscription
    sessionpay audit            View the audit trail
    sessionpay serve            Run the HTTP API
    sessionpay demo             Run a full demo flow on the local ledger
    sessionpay ledger ...       Local ledger helpers (mint, approve, balance)
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Optional

import click

from . import __version__
from .engine import BillingEngine
from .errors import SessionPayError
from .local_ledger import LocalLedger
from .money import format_amount, to_base_units
from .settings import Settings
from .subscription import SubscriptionStatus


def _engine() -> BillingEngine:
    ctx = click.get_current_context()
    obj = ctx.ensure_object(dict)
    if "engine" not in obj:
        try:
            obj["engine"] = BillingEngine.from_settings(obj.get("settings") or Settings.from_env())
        except (ValueError, SessionPayError) as e:
            click.echo(f"❌ Invalid configuration: {e}", err=True)
            sys.exit(1)
    return obj["engine"]


def _fmt(engine: BillingEngine, value: Optional[int]) -> str:
    if value is None:
        return "-"
    return format_amount(value, engine.settings.decimals, engine.settings.symbol)


def _when(ts: Optional[int]) -> str:
    if ts is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts))


def _parse_amount(engine: BillingEngine, value: str) -> int:
    try:
        units = to_base_units(value, engine.settings.decimals)
    except Exception:
        click.echo(f"❌ Invalid amount: {value}", err=True)
        sys.exit(1)
    if units <= 0:
        click.echo("❌ Amount must be positive", err=True)
        sys.exit(1)
    return units


def _local_ledger(engine: BillingEngine) -> LocalLedger:
    if not isinstance(engine.backend, LocalLedger):
        click.echo("❌ Ledger helpers only work with the local ledger (SESSIONPAY_LEDGER=local)", err=True)
        sys.exit(1)
    return engine.backend


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (default: SESSIONPAY_LOG_LEVEL or WARNING)",
)
@click.pass_context
def main(ctx: click.Context, log_level: Optional[str]):
    """SessionPay — Delegated-authority recurring billing."""
    ctx.ensure_object(dict)
    try:
        settings = Settings.from_env()
    except ValueError as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)
    ctx.obj["settings"] = settings
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.group("grant")
def grant_group():
    """Grant lifecycle operations."""
    pass


@grant_group.command("create")
@click.option("--owner", required=True, help="Owner account address")
@click.option("--source", default=None, help="Funding account address (default: owner)")
@click.option("--periods", type=int, required=True, help="Number of billing periods")
@click.option("--amount", required=True, help="Amount per period (e.g. 5.00)")
def grant_create(owner: str, source: Optional[str], periods: int, amount: str):
    """Issue a grant and its single-purpose session key."""
    engine = _engine()
    period_amount = _parse_amount(engine, amount)
    try:
        receipt = engine.issuer.issue(
            owner_account=owner,
            source_account=source or owner,
            period_amount=period_amount,
            periods=periods,
        )
    except SessionPayError as e:
        click.echo(f"❌ Failed to create grant: {e}", err=True)
        sys.exit(1)

    click.echo(f"✅ Grant created: {receipt.subscription_id}")
    click.echo(f"   Delegate:  {receipt.delegate_account}")
    click.echo(f"   Per period: {_fmt(engine, period_amount)} x {periods}")
    click.echo(f"   Ceiling:   {_fmt(engine, receipt.approved_ceiling)} ({receipt.approved_ceiling} base units)")
    click.echo("   Next: approve the delegate for the ceiling, then `sessionpay grant activate`.")


@grant_group.command("activate")
@click.argument("subscription_id")
@click.option("--verify-allowance", is_flag=True, default=False,
              help="Check the on-ledger allowance covers the ceiling first")
def grant_activate(subscription_id: str, verify_allowance: bool):
    """Activate a grant after the payer's approval is confirmed."""
    engine = _engine()
    try:
        sub = engine.issuer.activate(subscription_id, verify_allowance=verify_allowance)
    except SessionPayError as e:
        click.echo(f"❌ Failed to activate grant: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Grant active: {sub.id}")
    click.echo(f"   Next charge: {_when(sub.next_charge_at)}")


@grant_group.command("revoke")
@click.argument("subscription_id")
@click.option("--reason", default="revoked by owner", help="Revocation reason")
def grant_revoke(subscription_id: str, reason: str):
    """Cancel a grant. No further charges will be attempted."""
    engine = _engine()
    try:
        sub = engine.issuer.revoke(subscription_id, reason=reason)
    except SessionPayError as e:
        click.echo(f"❌ Failed to revoke grant: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Grant revoked: {sub.id} ({sub.revoked_reason})")


@grant_group.command("show")
@click.argument("subscription_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw record")
def grant_show(subscription_id: str, as_json: bool):
    """Show one subscription and its charge history."""
    engine = _engine()
    try:
        sub = engine.store.get(subscription_id)
    except SessionPayError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(sub.to_public_dict(), indent=2))
        return

    click.echo(f"📊 Subscription {sub.id}")
    click.echo(f"   Status:      {sub.status}")
    click.echo(f"   Owner:       {sub.owner_account}")
    click.echo(f"   Delegate:    {sub.delegate_account}")
    click.echo(f"   Per period:  {_fmt(engine, sub.period_amount)}")
    click.echo(f"   Periods:     {sub.periods_remaining} of {sub.periods_at_creation} remaining")
    click.echo(f"   Settled:     {len(sub.successful_charges())} charges")
    click.echo(f"   Next charge: {_when(sub.next_charge_at)}")
    for record in sub.charge_history:
        marker = {"success": "✅", "failed": "❌"}.get(record.outcome, "⏳")
        ref = f" {record.tx_ref}" if record.tx_ref else ""
        reason = f" ({record.reason})" if record.reason and record.outcome == "failed" else ""
        click.echo(f"   {_when(record.timestamp)} {marker} {_fmt(engine, record.amount)}{ref}{reason}")


@grant_group.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in SubscriptionStatus]),
    default=None,
    help="Filter by status",
)
def grant_list(status: Optional[str]):
    """List subscriptions."""
    engine = _engine()
    try:
        subs = engine.store.list_all(status=status)
    except SessionPayError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if not subs:
        click.echo("No subscriptions found.")
        return
    for sub in subs:
        click.echo(
            f"- {sub.id} [{sub.status}] {_fmt(engine, sub.period_amount)} "
            f"x {sub.periods_remaining}/{sub.periods_at_creation}, next {_when(sub.next_charge_at)}"
        )


@main.command()
@click.argument("subscription_id")
def charge(subscription_id: str):
    """Charge one subscription if it is due."""
    engine = _engine()
    result = engine.executor.charge(subscription_id)
    if result.ok:
        click.echo(f"✅ Charged {_fmt(engine, result.amount_charged)}")
        click.echo(f"   Tx:          {result.tx_ref}")
        click.echo(f"   Remaining:   {result.periods_remaining} periods")
        click.echo(f"   Next charge: {_when(result.next_charge_at)}")
    else:
        click.echo(f"❌ Charge {result.error}: {result.reason}", err=True)
        sys.exit(1)


@main.command()
@click.option("--loop", is_flag=True, help="Keep sweeping until interrupted")
@click.option("--interval", type=float, default=60.0, help="Seconds between sweeps with --loop")
@click.option("--json", "as_json", is_flag=True, help="Print the sweep summary as JSON")
def sweep(loop: bool, interval: float, as_json: bool):
    """Charge every subscription that is due."""
    engine = _engine()
    if loop:
        click.echo(f"🔁 Sweeping every {interval:.0f}s (Ctrl-C to stop)")
        try:
            engine.scheduler.run_forever(interval_seconds=interval)
        except KeyboardInterrupt:
            click.echo("Stopped.")
        return

    try:
        summary = engine.scheduler.run_once()
    except SessionPayError as e:
        click.echo(f"❌ Sweep failed: {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
        return
    click.echo(
        f"Sweep: {summary.due} due, {summary.settled} settled, "
        f"{summary.failed} failed, {summary.skipped} skipped"
    )
    for result in summary.results:
        status = "✅" if result.ok else "❌"
        detail = result.tx_ref if result.ok else f"{result.error}: {result.reason}"
        click.echo(f"  {status} {result.subscription_id} {detail}")


@main.command()
@click.option("--subscription-id", default=None, help="Filter by subscription ID")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(subscription_id: Optional[str], limit: int):
    """View the audit trail."""
    engine = _engine()
    try:
        events = engine.audit.read_events(subscription_id=subscription_id, limit=limit)
    except SessionPayError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {_fmt(engine, event.amount)}" if event.amount else ""
        sub = f" {event.subscription_id}" if event.subscription_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{sub}{amount}{reason}")


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8420, help="Bind port")
def serve(host: str, port: int):
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app

    engine = _engine()
    uvicorn.run(create_app(engine), host=host, port=port)


@main.command()
@click.option("--periods", type=int, default=3, help="Billing periods to run through")
@click.option("--amount", default="1.00", help="Amount per period")
def demo(periods: int, amount: str):
    """Run a full demo of the grant and charge flow on the local ledger."""
    from eth_account import Account

    engine = _engine()
    ledger = _local_ledger(engine)
    period_amount = _parse_amount(engine, amount)
    period = engine.settings.period_seconds
    start = int(time.time())

    click.echo("🎬 SessionPay Demo — Delegated Recurring Billing")
    click.echo("=" * 50)

    click.echo("\n1️⃣  Creating a payer account...")
    payer = Account.create()
    ledger.mint(payer.address, period_amount * periods)
    click.echo(f"   Payer:    {payer.address}")
    click.echo(f"   Balance:  {_fmt(engine, ledger.get_balance(payer.address))}")

    click.echo("\n2️⃣  Issuing a grant...")
    receipt = engine.issuer.issue(payer.address, payer.address, period_amount, periods, now=start)
    click.echo(f"   ✅ Grant:   {receipt.subscription_id}")
    click.echo(f"   Delegate:  {receipt.delegate_account}")
    click.echo(f"   Ceiling:   {_fmt(engine, receipt.approved_ceiling)}")

    click.echo("\n3️⃣  Payer approves the delegate for the ceiling...")
    ledger.approve(payer.address, receipt.delegate_account, receipt.approved_ceiling)
    engine.issuer.activate(receipt.subscription_id, now=start, verify_allowance=True)
    click.echo("   ✅ Allowance confirmed, grant active")

    click.echo("\n4️⃣  Charging each period...")
    for i in range(periods + 1):
        result = engine.executor.charge(receipt.subscription_id, now=start + i * period)
        if result.ok:
            click.echo(f"   ✅ Period {i + 1}: {_fmt(engine, result.amount_charged)} ({result.periods_remaining} left)")
        else:
            click.echo(f"   ❌ Period {i + 1}: {result.error} ({result.reason})")

    sub = engine.store.get(receipt.subscription_id)
    click.echo("\n5️⃣  Final state...")
    click.echo(f"   Status:    {sub.status}")
    click.echo(f"   Payer:     {_fmt(engine, ledger.get_balance(payer.address))}")
    click.echo(f"   Merchant:  {_fmt(engine, ledger.get_balance(engine.executor.merchant_account))}")
    click.echo(f"   Allowance: {_fmt(engine, ledger.get_allowance(payer.address, receipt.delegate_account))}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Grant → Approve → Charge → Verify → Expire")
    click.echo("   The engine never held more authority than the approved ceiling.")


@main.group("ledger")
def ledger_group():
    """Local ledger helpers for development."""
    pass


@ledger_group.command("mint")
@click.argument("account")
@click.argument("amount")
def ledger_mint(account: str, amount: str):
    """Credit ACCOUNT with AMOUNT tokens."""
    engine = _engine()
    ledger = _local_ledger(engine)
    try:
        balance = ledger.mint(account, _parse_amount(engine, amount))
    except SessionPayError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Balance of {account}: {_fmt(engine, balance)}")


@ledger_group.command("approve")
@click.argument("source")
@click.argument("delegate")
@click.argument("amount")
def ledger_approve(source: str, delegate: str, amount: str):
    """Approve DELEGATE to pull up to AMOUNT from SOURCE."""
    engine = _engine()
    ledger = _local_ledger(engine)
    units = _parse_amount(engine, amount)
    try:
        tx_ref = ledger.approve(source, delegate, units)
    except SessionPayError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Approved {_fmt(engine, units)} for {delegate}")
    click.echo(f"   Tx: {tx_ref}")


@ledger_group.command("balance")
@click.argument("account")
def ledger_balance(account: str):
    """Show the token balance of ACCOUNT."""
    engine = _engine()
    try:
        balance = engine.ledger.get_balance(account)
    except SessionPayError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"{account}: {_fmt(engine, balance)}")


if __name__ == "__main__":
    main()
