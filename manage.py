"""
manage.py — CLI admin commands for VibeRide.

Usage:
    python manage.py init-db
    python manage.py reap-stale --older-than 30
    python manage.py issue-token --user-id 6f1c... [--role service_role]
"""

import logging
from datetime import timedelta

import click
from dotenv import load_dotenv

load_dotenv()

from database import SessionLocal, init_db as _init_db   # noqa: E402
from errors import LifecycleError                        # noqa: E402
from lifecycle import reap_stale as _reap_stale          # noqa: E402


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Log at DEBUG level')
def cli(verbose: bool):
    """VibeRide admin commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
    )


@cli.command('init-db')
def init_db():
    """Create all tables (first deploy / local development)."""
    _init_db()
    click.echo('✓ Database tables created')


@cli.command('reap-stale')
@click.option('--older-than', 'older_than', type=click.IntRange(min=1), default=30,
              show_default=True, help='Minutes without progress before a generation counts as stale')
def reap_stale(older_than: int):
    """Fail pending/running itineraries orphaned by a restart."""
    with SessionLocal() as session:
        try:
            reaped = _reap_stale(session, timedelta(minutes=older_than))
        except LifecycleError as exc:
            click.echo(f'✗ {exc.message}', err=True)
            raise SystemExit(1)
    for itinerary_id in reaped:
        click.echo(f'  failed {itinerary_id}')
    click.echo(f'✓ Reaped {len(reaped)} stale generation(s)')


@cli.command('issue-token')
@click.option('--user-id', required=True, help='Subject (user id) for the token')
@click.option('--role', default='authenticated',
              type=click.Choice(['authenticated', 'service_role']), show_default=True)
@click.option('--hours', default=1.0, show_default=True, help='Token lifetime in hours')
def issue_token(user_id: str, role: str, hours: float):
    """Print a signed JWT for local testing (uses JWT_SECRET_KEY)."""
    from auth import encode_token
    click.echo(encode_token(user_id.strip(), role=role, ttl_hours=hours))


if __name__ == '__main__':
    cli()
