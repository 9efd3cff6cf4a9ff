# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/orderflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent). Use `flask db upgrade` for migrated databases.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo restaurant with an owner and three staff members (idempotent).
#
# Orders:
# - python -m flask orders stale-assignments [--restaurant-id 1] [--minutes 30]
#   List orders claimed but not started for longer than the threshold (report only).
# - python -m flask orders queue --restaurant-id 1
#   Show the unassigned-order queue with positions and estimated waits.
# - python -m flask orders reevaluate-queue --restaurant-id 1
#   Run queue re-evaluation now (normally triggered by staff availability changes).
#
# Maintenance:
# - python -m flask maintenance purge-notifications
#   Delete notifications past their retention window.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Restaurant, StaffMember
from .services import assignment_service, notification_service, queue_service
from .time_utils import utcnow


DEMO_OWNER_ID = "owner-demo"
DEMO_STAFF = (
    ("Asha", 4.8),
    ("Ben", 4.5),
    ("Chen", 4.5),
)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for demo data.")


@system_group.command('seed-demo')
@click.option('--name', default='Demo Bistro', help='Restaurant name')
@click.option('--owner-id', default=DEMO_OWNER_ID, help='Owner identity')
@with_appcontext
def seed_demo(name, owner_id):
    """Create a demo restaurant, owner identity and staff (idempotent)."""
    restaurant = db.session.query(Restaurant).filter_by(name=name).first()
    if restaurant is None:
        restaurant = Restaurant(
            name=name,
            owner_id=owner_id,
            order_prefix="ORD",
            tax_rate_bps=500,
            auto_assign=True,
            created_at=utcnow(),
        )
        db.session.add(restaurant)
        db.session.commit()
        click.echo(f"PASS Created restaurant: {restaurant.name} (ID: {restaurant.id}, owner: {owner_id})")
    else:
        click.echo(f"PASS Using existing restaurant: {restaurant.name} (ID: {restaurant.id})")

    for display_name, rating in DEMO_STAFF:
        staff = db.session.query(StaffMember).filter_by(
            restaurant_id=restaurant.id, display_name=display_name
        ).first()
        if staff is None:
            staff = StaffMember(
                restaurant_id=restaurant.id,
                display_name=display_name,
                performance_rating=rating,
                created_at=utcnow(),
            )
            db.session.add(staff)
            db.session.commit()
            click.echo(f"  + staff {staff.display_name} (ID: {staff.id}, rating {rating})")
        else:
            click.echo(f"  = staff {staff.display_name} (ID: {staff.id})")


@click.group('orders')
def orders_group():
    """Order lifecycle inspection."""


@orders_group.command('stale-assignments')
@click.option('--restaurant-id', type=int, default=None)
@click.option('--minutes', type=int, default=None, help='Threshold (default: STALE_ASSIGNMENT_MINUTES)')
@with_appcontext
def stale_assignments_cli(restaurant_id, minutes):
    """List orders stuck in 'assigned'. Nothing is released automatically."""
    rows = assignment_service.stale_assignments(restaurant_id, older_than_minutes=minutes)
    if not rows:
        click.echo("No stale assignments.")
        return

    click.echo(f"{'ORDER':<12} {'REST':>5} {'STAFF':<20} {'ONLINE':<7} {'MINUTES':>8}")
    for row in rows:
        staff = f"{row['staff_name'] or '-'} ({row['assigned_staff_id']})"
        click.echo(
            f"{row['order_number']:<12} {row['restaurant_id']:>5} {staff:<20} "
            f"{'yes' if row['staff_online'] else 'no':<7} {row['minutes_assigned']:>8}"
        )


@orders_group.command('queue')
@click.option('--restaurant-id', type=int, required=True)
@with_appcontext
def queue_cli(restaurant_id):
    """Show queued orders in dequeue order."""
    rows = queue_service.list_queue(restaurant_id)
    if not rows:
        click.echo("Queue is empty.")
        return
    for row in rows:
        click.echo(
            f"{row['position']:>3}. {row['order_number']:<12} {row['priority']:<7} "
            f"~{row['estimated_wait_minutes']} min"
        )


@orders_group.command('reevaluate-queue')
@click.option('--restaurant-id', type=int, required=True)
@with_appcontext
def reevaluate_queue_cli(restaurant_id):
    """Hand queued orders to available staff now."""
    orders = assignment_service.reevaluate_queue(restaurant_id)
    click.echo(f"Processed {len(orders)} queued order(s).")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('purge-notifications')
@with_appcontext
def purge_notifications_cli():
    """Delete notifications past NOTIFICATION_RETENTION_HOURS."""
    deleted = notification_service.purge_expired()
    click.echo(f"Deleted {deleted} expired notifications.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(maintenance_group)
