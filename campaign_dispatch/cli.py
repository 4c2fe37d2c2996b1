"""CLI tools for campaign dispatch operators."""

from datetime import timedelta

import click

from campaign_dispatch.db.enums import LogLevel
from campaign_dispatch.db.session import SessionLocal, create_all
from campaign_dispatch.services import campaign_store
from campaign_dispatch.utils.normalization import utcnow


@click.group()
def cli():
    """Campaign dispatch CLI tools."""
    pass


@cli.command("init-db")
def init_db():
    """Create all tables (local/dev databases; production uses Alembic)."""
    create_all()
    click.echo("✅ Tables created")


@cli.command()
@click.argument("campaign_id")
def status(campaign_id: str):
    """
    Show a campaign's stored status, counters and delivery records.

    Example:
        campaign-dispatch status 3f1c...
    """
    db = SessionLocal()
    try:
        campaign = campaign_store.get_campaign(db, campaign_id)
        if campaign is None:
            click.echo(f"❌ Campaign {campaign_id} not found")
            raise SystemExit(1)

        counts = campaign_store.read_counts(db, campaign_id)
        records = campaign_store.count_records_by_status(db, campaign_id)

        click.echo(f"Campaign:   {campaign.name} ({campaign.id})")
        click.echo(f"Status:     {campaign.status}{' (paused flag set)' if campaign.is_paused else ''}")
        click.echo(f"Progress:   {counts.processed}/{counts.total} (sent {counts.sent}, failed {counts.failed})")
        click.echo(f"Last sent:  {counts.last_sent_at or '-'}")
        if campaign.recovery_token:
            click.echo(f"Lease:      held until {campaign.recovery_expires_at}")
        if records:
            click.echo("Records:    " + ", ".join(f"{key}={value}" for key, value in sorted(records.items())))
    finally:
        db.close()


@cli.command("release-lease")
@click.argument("campaign_id")
def release_lease(campaign_id: str):
    """Clear a stuck start lease so the campaign can be started again."""
    db = SessionLocal()
    try:
        if campaign_store.force_release_lease(db, campaign_id):
            campaign_store.write_log(db, campaign_id, LogLevel.WARNING, "Start lease released by operator")
            click.echo(f"✅ Lease released for {campaign_id}")
        else:
            click.echo(f"No lease held for {campaign_id}")
    finally:
        db.close()


@cli.command("reap-claims")
@click.option(
    "--older-than-minutes",
    default=15,
    show_default=True,
    type=int,
    help="Only fail claims older than this",
)
@click.confirmation_option(prompt="Fail every stale 'processing' record? Only run this with no worker delivering.")
def reap_claims(older_than_minutes: int):
    """Mark abandoned 'processing' records as failed and bump failed counters."""
    db = SessionLocal()
    try:
        reaped = campaign_store.reap_stale_claims(
            db, older_than=utcnow() - timedelta(minutes=older_than_minutes)
        )
        if not reaped:
            click.echo("No stale claims found")
            return
        for campaign_id, count in sorted(reaped.items()):
            campaign_store.write_log(
                db,
                campaign_id,
                LogLevel.WARNING,
                f"{count} interrupted deliveries marked failed by operator",
                {"count": count},
            )
            click.echo(f"✅ {campaign_id}: {count} claims marked failed")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
