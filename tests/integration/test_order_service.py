"""
Integration tests for the order service: slot accounting across the
sale lifecycle.
"""

import threading
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import counters, order_payload, sale_count
from subdesk.database import get_database
from subdesk.exceptions import (
    AccountNotFoundError, InsufficientCapacityError, NotFoundError, TransientStoreError, ValidationError
)
from subdesk.models import Account, SaleStatus
from subdesk.services import order_service, order_store


class TestCreateOrder:
    """Tests for sale creation."""

    def test_create_reserves_slots_and_prices(self, session, account_a):
        sale = order_service.create_order(
            order_payload(('family-a@example.com', 2, 100), discount_rate=15),
            session
        )

        assert sale.order_number.startswith('SO-')
        assert len(sale.order_number) == 15
        assert sale.subtotal == Decimal('200')
        assert sale.discount_amount == Decimal('30')
        assert sale.total_amount == Decimal('170')
        assert sale.status is SaleStatus.ACTIVE
        assert sale.lines[0].account_id == account_a.id
        assert counters(session, account_a.id) == (2, 1)

    def test_create_by_account_id(self, session, account_b):
        payload = order_payload()
        payload['items'] = [{'accountId': account_b.id, 'unitPrice': '4.99', 'quantity': 1}]

        sale = order_service.create_order(payload, session)

        assert sale.lines[0].account_email == 'family-b@example.com'
        assert sale.lines[0].product_name == 'Spotify Family'
        assert counters(session, account_b.id) == (1, 1)

    def test_quantity_defaults_to_one(self, session, account_a):
        payload = order_payload()
        payload['items'] = [{'accountEmail': 'family-a@example.com', 'unitPrice': 5}]

        sale = order_service.create_order(payload, session)

        assert sale.lines[0].quantity == 1
        assert counters(session, account_a.id) == (1, 2)

    def test_email_lookup_is_case_insensitive(self, session, account_a):
        order_service.create_order(order_payload(('Family-A@Example.com', 1, 5)), session)

        assert counters(session, account_a.id) == (1, 2)

    def test_credentials_are_stored(self, session, account_a):
        payload = order_payload(
            ('family-a@example.com', 1, 5),
            credentials=[{'username': 'profile-3', 'password': 'pin-1234', 'loginUrl': 'https://example.com'}]
        )

        sale = order_service.create_order(payload, session)

        assert [cred.username for cred in sale.credentials] == ['profile-3']
        assert sale.credentials[0].login_url == 'https://example.com'

    def test_order_numbers_are_unique(self, session, make_account):
        account = make_account(max_user_slots=10)
        numbers = {
            order_service.create_order(order_payload((account.email, 1, 1)), session).order_number
            for _ in range(5)
        }
        assert len(numbers) == 5

    def test_insufficient_capacity_changes_nothing(self, session, account_a):
        with pytest.raises(InsufficientCapacityError) as exc_info:
            order_service.create_order(order_payload(('family-a@example.com', 4, 10)), session)

        assert exc_info.value.available == 3
        assert counters(session, account_a.id) == (0, 3)
        assert sale_count(session) == 0

    def test_failing_item_rolls_back_earlier_reservations(self, session, account_a, account_b, make_account):
        """Test atomicity: item 2 of 3 fails, so no item keeps a reserved slot."""
        account_c = make_account(max_user_slots=5)
        payload = order_payload(
            ('family-a@example.com', 2, 10),
            ('family-b@example.com', 3, 10),
            (account_c.email, 1, 10)
        )

        with pytest.raises(InsufficientCapacityError) as exc_info:
            order_service.create_order(payload, session)

        assert exc_info.value.account_id == account_b.id
        assert counters(session, account_a.id) == (0, 3)
        assert counters(session, account_b.id) == (0, 2)
        assert counters(session, account_c.id) == (0, 5)
        assert sale_count(session) == 0

    def test_unknown_account_is_fatal(self, session, account_a):
        payload = order_payload(('family-a@example.com', 1, 10), ('nobody@example.com', 1, 10))

        with pytest.raises(AccountNotFoundError):
            order_service.create_order(payload, session)

        assert counters(session, account_a.id) == (0, 3)
        assert sale_count(session) == 0

    def test_same_account_twice_in_one_sale(self, session, account_a):
        sale = order_service.create_order(
            order_payload(('family-a@example.com', 1, 10), ('family-a@example.com', 2, 10)),
            session
        )

        assert sale.slot_count == 3
        assert counters(session, account_a.id) == (3, 0)

    @pytest.mark.parametrize('items', [
        [],
        [{'accountEmail': 'family-a@example.com', 'unitPrice': 10, 'quantity': 0}],
        [{'accountEmail': 'family-a@example.com', 'unitPrice': 10, 'quantity': -2}],
        [{'accountEmail': 'family-a@example.com', 'unitPrice': 10, 'quantity': 1.5}],
        [{'accountEmail': 'family-a@example.com', 'unitPrice': 10, 'quantity': 'two'}],
        [{'accountEmail': 'family-a@example.com', 'unitPrice': -1, 'quantity': 1}],
        [{'accountEmail': 'family-a@example.com', 'quantity': 1}],
        [{'unitPrice': 10, 'quantity': 1}],
        [{'accountEmail': '   ', 'unitPrice': 10, 'quantity': 1}],
        [{'accountId': 1.9, 'unitPrice': 10, 'quantity': 1}],
        [{'accountId': 'abc', 'unitPrice': 10, 'quantity': 1}],
        [{'accountEmail': 'family-a@example.com', 'unitPrice': '100000000', 'quantity': 1}],
        [{'accountEmail': 'family-a@example.com', 'unitPrice': '50000000', 'quantity': 2}],
        [{'accountEmail': 'family-a@example.com', 'unitPrice': 0, 'quantity': 2 ** 31}],
    ])
    def test_invalid_items_rejected(self, session, account_a, items):
        payload = order_payload()
        payload['items'] = items

        with pytest.raises(ValidationError):
            order_service.create_order(payload, session)

        assert counters(session, account_a.id) == (0, 3)

    def test_customer_name_required(self, session, account_a):
        payload = order_payload(('family-a@example.com', 1, 10), customerName='  ')

        with pytest.raises(ValidationError):
            order_service.create_order(payload, session)

    def test_cannot_create_cancelled(self, session, account_a):
        payload = order_payload(('family-a@example.com', 1, 10), status='cancelled')

        with pytest.raises(ValidationError):
            order_service.create_order(payload, session)

    def test_subtotal_over_column_range_rejected(self, session, make_account):
        account = make_account(max_user_slots=5)
        payload = order_payload((account.email, 1, '60000000'), (account.email, 1, '60000000'))

        with pytest.raises(ValidationError) as exc_info:
            order_service.create_order(payload, session)

        assert 'subtotal' in exc_info.value.message
        assert sale_count(session) == 0

    @pytest.mark.parametrize('credential', [
        {'username': {'x': 1}},
        {'username': 'u' * 256},
        {'password': ['secret']},
        {'loginUrl': 'https://example.com/' + 'a' * 500},
        {'additionalInfo': 42},
        {'isActive': 'yes'},
        'profile-1',
    ])
    def test_malformed_credentials_rejected(self, session, account_a, credential):
        """Test that credential fields are checked before the transaction opens."""
        payload = order_payload(('family-a@example.com', 1, 10), credentials=[credential])

        with pytest.raises(ValidationError):
            order_service.create_order(payload, session)

        assert counters(session, account_a.id) == (0, 3)
        assert sale_count(session) == 0

    def test_credential_password_kept_verbatim(self, session, account_a):
        payload = order_payload(
            ('family-a@example.com', 1, 10),
            credentials=[{'username': '  profile-2 ', 'password': ' pin 99 '}]
        )

        sale = order_service.create_order(payload, session)

        assert sale.credentials[0].username == 'profile-2'
        assert sale.credentials[0].password == ' pin 99 '

    def test_concurrent_orders_never_oversell(self, app, session, account_a):
        """Test five single-slot orders racing for three slots."""
        app.config['ORDER_TX_MAX_ATTEMPTS'] = 10
        account_id = account_a.id
        results = []
        lock = threading.Lock()

        def place_order():
            with app.app_context():
                thread_session = get_database(app).session
                try:
                    order_service.create_order(order_payload(('family-a@example.com', 1, 10)), thread_session)
                    outcome = 'ok'
                except (InsufficientCapacityError, TransientStoreError) as e:
                    outcome = type(e).__name__
                finally:
                    thread_session.remove()
                with lock:
                    results.append(outcome)

        threads = [threading.Thread(target=place_order) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == ['InsufficientCapacityError', 'InsufficientCapacityError', 'ok', 'ok', 'ok']
        assert counters(session, account_id) == (3, 0)
        assert sale_count(session) == 3


class TestDeleteOrder:
    """Tests for sale deletion."""

    def test_delete_releases_slots(self, session, account_a, account_b):
        sale = order_service.create_order(
            order_payload(('family-a@example.com', 2, 10), ('family-b@example.com', 1, 10)),
            session
        )

        result = order_service.delete_order(sale.order_number, session)

        assert result['orderNumber'] == sale.order_number
        assert result['slotsReleased'] == 3
        assert {entry['accountId'] for entry in result['releasedAccounts']} == {account_a.id, account_b.id}
        assert counters(session, account_a.id) == (0, 3)
        assert counters(session, account_b.id) == (0, 2)
        assert sale_count(session) == 0

    def test_delete_unknown_order(self, session):
        with pytest.raises(NotFoundError):
            order_service.delete_order('SO-DOESNOTEXIST', session)

    def test_second_delete_is_not_found(self, session, account_a):
        """Test that slots cannot be released twice through a repeated delete."""
        sale = order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)
        order_service.delete_order(sale.order_number, session)

        with pytest.raises(NotFoundError):
            order_service.delete_order(sale.order_number, session)

        assert counters(session, account_a.id) == (0, 3)

    def test_delete_skips_missing_account(self, session, account_a, account_b):
        sale = order_service.create_order(
            order_payload(('family-a@example.com', 1, 10), ('family-b@example.com', 1, 10)),
            session
        )
        session.query(Account).filter(Account.id == account_b.id).delete(synchronize_session=False)
        session.commit()

        result = order_service.delete_order(sale.order_number, session)

        assert result['slotsReleased'] == 1
        assert counters(session, account_a.id) == (0, 3)
        assert sale_count(session) == 0

    def test_delete_cancelled_sale_releases_nothing(self, session, account_a):
        sale = order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)
        order_service.update_order(sale.order_number, {'status': 'cancelled'}, session)

        result = order_service.delete_order(sale.order_number, session)

        assert result['slotsReleased'] == 0
        assert counters(session, account_a.id) == (0, 3)

    def test_create_delete_round_trip(self, session, account_a, account_b):
        before = (counters(session, account_a.id), counters(session, account_b.id))

        sale = order_service.create_order(
            order_payload(('family-b@example.com', 2, 3), ('family-a@example.com', 1, 3)),
            session
        )
        order_service.delete_order(sale.order_number, session)

        assert (counters(session, account_a.id), counters(session, account_b.id)) == before

    def test_end_to_end_scenario(self, session, account_a):
        """Test reserve 2 of 3, refuse 2 more, release, and sell again."""
        first = order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)
        assert counters(session, account_a.id) == (2, 1)

        with pytest.raises(InsufficientCapacityError):
            order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)
        assert counters(session, account_a.id) == (2, 1)

        order_service.delete_order(first.order_number, session)
        assert counters(session, account_a.id) == (0, 3)

        order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)
        assert counters(session, account_a.id) == (2, 1)


class TestUpdateOrder:
    """Tests for sale patches and status transitions."""

    def test_cancel_releases_and_reactivate_reserves(self, session, account_a):
        sale = order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)

        order_service.update_order(sale.order_number, {'status': 'cancelled'}, session)
        assert counters(session, account_a.id) == (0, 3)

        updated = order_service.update_order(sale.order_number, {'status': 'completed'}, session)
        assert updated.status is SaleStatus.COMPLETED
        assert counters(session, account_a.id) == (2, 1)

    def test_completing_active_sale_keeps_slots(self, session, account_a):
        sale = order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)

        order_service.update_order(sale.order_number, {'status': 'completed'}, session)

        assert counters(session, account_a.id) == (2, 1)

    def test_reactivate_without_capacity_fails(self, session, account_a):
        sale = order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)
        order_service.update_order(sale.order_number, {'status': 'cancelled'}, session)
        order_service.create_order(order_payload(('family-a@example.com', 3, 10)), session)

        with pytest.raises(InsufficientCapacityError):
            order_service.update_order(sale.order_number, {'status': 'active'}, session)

        session.expire_all()
        assert order_service.get_order(sale.order_number, session).status is SaleStatus.CANCELLED
        assert counters(session, account_a.id) == (3, 0)

    @pytest.mark.parametrize('patch', [
        {'items': []},
        {'quantity': 5},
        {'unitPrice': 1},
        {'discountRate': 50},
        {'accountEmail': 'family-b@example.com'},
    ])
    def test_line_item_fields_rejected(self, session, account_a, patch):
        sale = order_service.create_order(order_payload(('family-a@example.com', 1, 10)), session)

        with pytest.raises(ValidationError) as exc_info:
            order_service.update_order(sale.order_number, patch, session)

        assert 'delete' in exc_info.value.message
        assert counters(session, account_a.id) == (1, 2)

    def test_patch_customer_fields_and_credentials(self, session, account_a):
        sale = order_service.create_order(
            order_payload(('family-a@example.com', 1, 10), credentials=[{'username': 'old'}]),
            session
        )

        updated = order_service.update_order(sale.order_number, {
            'customerName': 'Renamed Customer',
            'notes': 'paid in advance',
            'credentials': [{'username': 'new-1'}, {'username': 'new-2'}]
        }, session)

        assert updated.customer_name == 'Renamed Customer'
        assert updated.notes == 'paid in advance'
        assert sorted(cred.username for cred in updated.credentials) == ['new-1', 'new-2']

    def test_unknown_status_rejected(self, session, account_a):
        sale = order_service.create_order(order_payload(('family-a@example.com', 1, 10)), session)

        with pytest.raises(ValidationError):
            order_service.update_order(sale.order_number, {'status': 'refunded'}, session)

    def test_update_unknown_order(self, session):
        with pytest.raises(NotFoundError):
            order_service.update_order('SO-MISSING', {'notes': 'x'}, session)


class TestQueries:

    def test_list_orders_filters(self, session, account_a, account_b):
        order_service.create_order(order_payload(('family-a@example.com', 1, 10)), session)
        other = order_service.create_order(
            order_payload(('family-b@example.com', 1, 10), customerEmail='other@example.com'),
            session
        )
        order_service.update_order(other.order_number, {'status': 'cancelled'}, session)

        assert len(order_service.list_orders(session)) == 2
        assert [s.order_number for s in order_service.list_orders(session, status='cancelled')] == [other.order_number]
        assert [s.order_number for s in order_service.list_orders(session, account_id=account_b.id)] == [other.order_number]
        assert len(order_service.list_orders(session, customer_email='jane@example.com')) == 1
        assert len(order_service.list_orders(session, limit=1)) == 1

    def test_delete_credential(self, session, account_a):
        sale = order_service.create_order(
            order_payload(('family-a@example.com', 1, 10), credentials=[{'username': 'u1'}]),
            session
        )
        credential_id = sale.credentials[0].id

        order_service.delete_credential(credential_id, session)

        with pytest.raises(NotFoundError):
            order_service.delete_credential(credential_id, session)

    def test_counters_match_active_sales(self, session, account_a, account_b):
        """Test the ledger invariant after a mix of operations."""
        first = order_service.create_order(
            order_payload(('family-a@example.com', 1, 10), ('family-b@example.com', 1, 10)), session
        )
        second = order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)
        order_service.update_order(second.order_number, {'status': 'cancelled'}, session)
        order_service.create_order(order_payload(('family-b@example.com', 1, 10)), session)
        order_service.delete_order(first.order_number, session)

        held = order_store.sum_active_quantities(session)
        for account in (account_a, account_b):
            current, available = counters(session, account.id)
            assert current == held.get(account.id, 0)
            assert current + available == account.max_user_slots


class _DriverError(Exception):
    """Stand-in for a DB-API exception carrying a SQLSTATE."""
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


class TestTransientFailures:
    """Tests for rollback and retry on lock conflicts."""

    @pytest.mark.parametrize('orig', [
        _DriverError('deadlock detected', '40P01'),
        _DriverError('could not serialize access', '40001'),
        _DriverError('canceling statement due to lock timeout', '55P03'),
        _DriverError('database is locked'),
    ])
    def test_transient_driver_errors_recognised(self, orig):
        assert order_service.is_transient_db_error(OperationalError('UPDATE account', {}, orig))

    def test_other_driver_errors_not_transient(self):
        error = IntegrityError('INSERT INTO sale', {}, _DriverError('duplicate key', '23505'))

        assert not order_service.is_transient_db_error(error)

    def test_lost_counter_update_is_retried(self, session, account_a, monkeypatch):
        """Test that one conflicting write is rolled back and the order retried."""
        original = order_store.update_account_slots
        calls = []

        def conflict_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise TransientStoreError('Slot counters changed concurrently')
            return original(*args, **kwargs)

        monkeypatch.setattr(order_store, 'update_account_slots', conflict_once)

        sale = order_service.create_order(order_payload(('family-a@example.com', 1, 10)), session)

        assert len(calls) == 2
        assert sale.order_number.startswith('SO-')
        assert counters(session, account_a.id) == (1, 2)
        assert sale_count(session) == 1

    def test_deadlock_is_retried(self, session, account_a, monkeypatch):
        original = order_store.update_account_slots
        calls = []

        def deadlock_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError('UPDATE account', {}, _DriverError('deadlock detected', '40P01'))
            return original(*args, **kwargs)

        monkeypatch.setattr(order_store, 'update_account_slots', deadlock_once)

        order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)

        assert counters(session, account_a.id) == (2, 1)

    def test_persistent_conflict_gives_up(self, app, session, account_a, monkeypatch):
        """Test that exhausted retries surface TransientStoreError and leave nothing behind."""
        attempts = []

        def always_conflict(*args, **kwargs):
            attempts.append(1)
            raise TransientStoreError('Slot counters changed concurrently')

        monkeypatch.setattr(order_store, 'update_account_slots', always_conflict)

        with pytest.raises(TransientStoreError):
            order_service.create_order(order_payload(('family-a@example.com', 1, 10)), session)

        assert len(attempts) == app.config['ORDER_TX_MAX_ATTEMPTS']
        assert counters(session, account_a.id) == (0, 3)
        assert sale_count(session) == 0

    def test_delete_retries_after_conflict(self, session, account_a, monkeypatch):
        sale = order_service.create_order(order_payload(('family-a@example.com', 2, 10)), session)
        original = order_store.update_account_slots
        calls = []

        def conflict_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise TransientStoreError()
            return original(*args, **kwargs)

        monkeypatch.setattr(order_store, 'update_account_slots', conflict_once)

        result = order_service.delete_order(sale.order_number, session)

        assert result['slotsReleased'] == 2
        assert counters(session, account_a.id) == (0, 3)
        assert sale_count(session) == 0
