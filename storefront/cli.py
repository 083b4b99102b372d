# storefront/cli.py
import click
from flask.cli import with_appcontext
from werkzeug.security import generate_password_hash

from .errors import StoreError
from .extensions import db
from .model import User


@click.command("create-admin")
@click.option("--email", required=True)
@click.option("--password", required=True)
@click.option("--name", required=True)
@with_appcontext
def create_admin(email, password, name):
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        click.echo("Email already exists")
        return
    u = User(email=email, name=name, password_hash=generate_password_hash(password), role="admin")
    db.session.add(u)
    db.session.commit()
    click.echo(f"Admin created: {u.id} {u.email}")


@click.command("sync-payment")
@click.argument("order_id", type=int)
@with_appcontext
def sync_payment(order_id):
    """Reconcile ORDER_ID against its payment intent on the processor."""
    from .services.payments import sync_payment as _sync

    try:
        outcome = _sync(order_id)
    except StoreError as e:
        raise click.ClickException(e.message)
    click.echo(f"Order {order_id}: {outcome}")


def register_cli(app):
    app.cli.add_command(create_admin)
    app.cli.add_command(sync_payment)
