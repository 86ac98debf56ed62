import click

from subsync.extensions import db
from subsync.workers.tasks import (
    purge_processed_events,
    replay_dead_letters,
    sweep_elapsed_cancellations,
)


def register_commands(app):
    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("Database initialized")

    @app.cli.command("replay-dead-letters")
    @click.option("--limit", type=int, default=None, help="Maximum entries to replay")
    def replay_dead_letters_command(limit):
        """Re-run pending dead-lettered webhook deliveries."""
        stats = replay_dead_letters(limit=limit)
        click.echo(
            f"replayed={stats['replayed']} failed={stats['failed']} abandoned={stats['abandoned']}"
        )

    @app.cli.command("purge-ledger")
    @click.option("--days", type=int, default=None, help="Retention window in days")
    def purge_ledger_command(days):
        """Delete processed-event ledger rows past the retention window."""
        deleted = purge_processed_events(retention_days=days)
        click.echo(f"Purged {deleted} ledger entries")

    @app.cli.command("sweep-tiers")
    def sweep_tiers_command():
        """Re-derive tiers for elapsed cancellations, exhausted grace and ended trials."""
        stats = sweep_elapsed_cancellations()
        click.echo(
            f"checked={stats['checked']} downgraded={stats['downgraded']} unchanged={stats['unchanged']} "
            f"failed={stats['failed']}"
        )
