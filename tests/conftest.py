import pytest
import uuid

from config import TestConfig
from subdesk import create_app
from subdesk.database import get_database
from subdesk.models import Account, Sale


@pytest.fixture(scope='function')
def app(tmp_path):
    """Create application instance bound to a fresh SQLite file."""
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'subdesk.db'}"

    app = create_app(_Config)
    database = get_database(app)
    database.create_all()

    ctx = app.app_context()
    ctx.push()
    yield app
    ctx.pop()

    database.dispose()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Database session shared with the services under test."""
    session = get_database(app).session
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope='function')
def make_account(session):
    """Factory for accounts with all slots free (or some already in use)."""
    def _make_account(max_user_slots=3, current_users=0, email=None, product_name='Netflix Premium'):
        suffix = str(uuid.uuid4())[:8]
        account = Account(
            product_name=product_name,
            label=f'Family plan {suffix}',
            email=email or f'shared-{suffix}@example.com',
            max_user_slots=max_user_slots,
            current_users=current_users,
            available_slots=max_user_slots - current_users,
            is_active=True
        )
        session.add(account)
        session.commit()
        session.refresh(account)
        return account
    return _make_account


@pytest.fixture(scope='function')
def account_a(make_account):
    """Account with 3 free slots."""
    return make_account(max_user_slots=3, email='family-a@example.com')


@pytest.fixture(scope='function')
def account_b(make_account):
    """Account with 2 free slots."""
    return make_account(max_user_slots=2, email='family-b@example.com', product_name='Spotify Family')


def counters(session, account_id):
    """Fresh (current_users, available_slots) of an account."""
    session.expire_all()
    account = session.get(Account, account_id)
    return account.current_users, account.available_slots


def sale_count(session):
    session.expire_all()
    return session.query(Sale).count()


def order_payload(*items, discount_rate=0, customer_type='standard', **extra):
    """Build a create-order request body from (account_email, quantity, unit_price) tuples."""
    payload = {
        'customerName': 'Jane Customer',
        'customerEmail': 'jane@example.com',
        'customerType': customer_type,
        'discountRate': discount_rate,
        'items': [
            {
                'accountEmail': email,
                'productName': 'Shared slot',
                'unitPrice': unit_price,
                'quantity': quantity
            }
            for email, quantity, unit_price in items
        ]
    }
    payload.update(extra)
    return payload
