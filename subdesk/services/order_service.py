"""
Order service with transactional slot accounting.

Creates, updates and deletes sales as single units of work:

    create: validate -> price -> lock + reserve slots -> insert sale -> commit
    delete: load sale -> release slots -> delete sale -> commit

Any failure rolls the whole transaction back; reservations made earlier in
the same attempt disappear with it. Deadlocks and lock timeouts roll back and
retry the whole operation up to ORDER_TX_MAX_ATTEMPTS times.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional
from flask import current_app, has_app_context
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, selectinload
from subdesk.exceptions import (
    SubdeskError, ValidationError, NotFoundError, AccountNotFoundError, TransientStoreError
)
from subdesk.models import AccountCredential, CustomerType, Sale, SaleLine, SaleStatus
from subdesk.services import order_store, slot_ledger_service
from subdesk.services.pricing_service import CENT, compute_totals
from subdesk.blueprints.metrics import orders_total

logger = logging.getLogger(__name__)

# deadlock_detected, serialization_failure, lock_not_available
TRANSIENT_SQLSTATES = {'40P01', '40001', '55P03'}

# Fields that change slot accounting; editing them in place would desync the counters
LINE_ITEM_FIELDS = {
    'items', 'quantity', 'unitPrice', 'unit_price', 'price',
    'discountRate', 'discount_rate', 'accountId', 'account_id', 'accountEmail', 'account_email'
}

# Largest value a Numeric(10, 2) column holds
MAX_AMOUNT = Decimal('99999999.99')
MAX_QUANTITY = 2 ** 31 - 1


def _setting(name: str, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def _get(data: Dict[str, Any], *keys, default=None):
    """Read the first present key (camelCase API names, snake_case legacy names)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _clean_str(value, field: str, max_length: int, required: bool = False, strip: bool = True) -> Optional[str]:
    if value is None:
        value = ''
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be a string')
    if strip:
        value = value.strip()
    if required and not value:
        raise ValidationError(f'{field} is required')
    if len(value) > max_length:
        raise ValidationError(f'{field} must be at most {max_length} characters')
    return value or None


def _parse_quantity(raw, position: int) -> int:
    if raw is None:
        return 1
    if isinstance(raw, bool):
        raise ValidationError(f'Item {position}: quantity must be a positive integer')
    try:
        quantity = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f'Item {position}: quantity must be a positive integer')
    if not quantity.is_finite() or quantity != quantity.to_integral_value() or quantity <= 0:
        raise ValidationError(f'Item {position}: quantity must be a positive integer')
    if quantity > MAX_QUANTITY:
        raise ValidationError(f'Item {position}: quantity must not exceed {MAX_QUANTITY}')
    return int(quantity)


def _parse_unit_price(raw, position: int) -> Decimal:
    if raw is None or isinstance(raw, bool):
        raise ValidationError(f'Item {position}: unitPrice is required')
    try:
        price = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f'Item {position}: unitPrice must be a number')
    if not price.is_finite() or price < 0:
        raise ValidationError(f'Item {position}: unitPrice must be a non-negative number')
    return price


def _parse_datetime(raw, field: str) -> Optional[datetime]:
    if raw is None or raw == '':
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'{field} must be an ISO-8601 date')


def _parse_status(raw, allowed) -> SaleStatus:
    try:
        status = SaleStatus(str(raw).strip().lower())
    except ValueError:
        status = None
    if status not in allowed:
        names = ', '.join(s.value for s in allowed)
        raise ValidationError(f'status must be one of: {names}')
    return status


def _parse_account_id(raw, position: int) -> Optional[int]:
    if raw is None:
        return None
    message = f'Item {position}: accountId must be a positive integer'
    if isinstance(raw, bool):
        raise ValidationError(message)
    try:
        account_id = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(message)
    if not account_id.is_finite() or account_id != account_id.to_integral_value() or account_id <= 0:
        raise ValidationError(message)
    return int(account_id)


def _parse_credentials(raw) -> List[Dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError('credentials must be a list')
    credentials = []
    for cred in raw:
        if not isinstance(cred, dict):
            raise ValidationError('each credential must be an object')
        is_active = _get(cred, 'isActive', 'is_active', default=True)
        if not isinstance(is_active, bool):
            raise ValidationError('credential isActive must be a boolean')
        credentials.append({
            'username': _clean_str(_get(cred, 'username'), 'credential username', 255),
            'password': _clean_str(_get(cred, 'password'), 'credential password', 255, strip=False),
            'login_url': _clean_str(_get(cred, 'loginUrl', 'login_url'), 'credential loginUrl', 500),
            'additional_info': _clean_str(
                _get(cred, 'additionalInfo', 'additional_info'), 'credential additionalInfo', 5000
            ),
            'is_active': is_active
        })
    return credentials


def validate_order_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and normalize a create-order request.

    Raises:
        ValidationError: for any malformed field (no transaction is opened)
    """
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')

    customer_name = _clean_str(_get(payload, 'customerName', 'customer_name'), 'customerName', 100, required=True)

    raw_items = _get(payload, 'items')
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError('items must be a non-empty list')

    items = []
    subtotal = Decimal('0')
    for position, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f'Item {position} must be an object')

        account_id = _parse_account_id(_get(raw, 'accountId', 'account_id'), position)
        account_email = _clean_str(_get(raw, 'accountEmail', 'account_email', 'email'), 'accountEmail', 255)
        if account_id is None and not account_email:
            raise ValidationError(f'Item {position}: accountId or accountEmail is required')

        unit_price = _parse_unit_price(_get(raw, 'unitPrice', 'unit_price', 'price'), position)
        quantity = _parse_quantity(_get(raw, 'quantity'), position)
        line_total = (unit_price * quantity).quantize(CENT, rounding=ROUND_HALF_UP)
        if line_total > MAX_AMOUNT:
            raise ValidationError(f'Item {position}: line total must not exceed {MAX_AMOUNT}')
        subtotal += line_total

        items.append({
            'account_id': account_id,
            'account_email': account_email,
            'product_name': _clean_str(_get(raw, 'productName', 'product_name', 'name'), 'productName', 100),
            'unit_price': unit_price,
            'quantity': quantity
        })

    if subtotal > MAX_AMOUNT:
        raise ValidationError(f'Order subtotal must not exceed {MAX_AMOUNT}')

    customer_type_raw = _get(payload, 'customerType', 'customer_type', default=CustomerType.STANDARD.value)
    try:
        customer_type = CustomerType(str(customer_type_raw).strip().lower())
    except ValueError:
        raise ValidationError('customerType must be one of: standard, reseller')

    return {
        'customer_name': customer_name,
        'customer_email': _clean_str(_get(payload, 'customerEmail', 'customer_email'), 'customerEmail', 255),
        'customer_phone': _clean_str(_get(payload, 'customerPhone', 'customer_phone'), 'customerPhone', 20),
        'customer_type': customer_type,
        'items': items,
        'discount_rate': _get(payload, 'discountRate', 'discount_rate'),
        'status': _parse_status(
            _get(payload, 'status', default=SaleStatus.ACTIVE.value),
            (SaleStatus.ACTIVE, SaleStatus.COMPLETED)
        ),
        'payment_method': _clean_str(_get(payload, 'paymentMethod', 'payment_method'), 'paymentMethod', 20) or 'card',
        'notes': _clean_str(_get(payload, 'notes'), 'notes', 2000),
        'order_date': _parse_datetime(_get(payload, 'orderDate', 'order_date', 'startDate', 'start_date'), 'orderDate'),
        'end_date': _parse_datetime(_get(payload, 'endDate', 'end_date'), 'endDate'),
        'credentials': _parse_credentials(_get(payload, 'credentials'))
    }


def generate_order_number(prefix: Optional[str] = None) -> str:
    """Human-readable order number; uniqueness is enforced by the sale table."""
    if prefix is None:
        prefix = _setting('ORDER_NUMBER_PREFIX', 'SO-')
    return f"{prefix}{uuid.uuid4().hex[:12].upper()}"


def is_transient_db_error(error: Exception) -> bool:
    """Deadlock, lock timeout or serialization failure reported by the driver."""
    orig = getattr(error, 'orig', None)
    code = getattr(orig, 'sqlstate', None) or getattr(orig, 'pgcode', None)
    if code in TRANSIENT_SQLSTATES:
        return True
    message = str(orig if orig is not None else error).lower()
    return any(marker in message for marker in ('database is locked', 'deadlock', 'lock wait timeout'))


def _apply_lock_timeout(session: Session) -> None:
    if session.get_bind().dialect.name != 'postgresql':
        return
    timeout_ms = int(_setting('ORDER_LOCK_TIMEOUT_MS', 5000))
    session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))


def _run_in_transaction(session: Session, operation: str, work: Callable[[], Any]) -> Any:
    """
    Run ``work`` and commit, rolling back on any failure.

    TransientStoreError (or a driver error recognised as transient) retries
    the whole unit of work; every other error is re-raised after rollback.
    """
    max_attempts = max(1, int(_setting('ORDER_TX_MAX_ATTEMPTS', 3)))

    for attempt in range(1, max_attempts + 1):
        try:
            _apply_lock_timeout(session)
            result = work()
            session.commit()
            orders_total.labels(operation=operation, outcome='ok').inc()
            return result

        except TransientStoreError as e:
            session.rollback()
            error = e

        except SubdeskError as e:
            session.rollback()
            orders_total.labels(operation=operation, outcome=type(e).__name__).inc()
            raise

        except DBAPIError as e:
            session.rollback()
            if not is_transient_db_error(e):
                orders_total.labels(operation=operation, outcome='error').inc()
                raise
            error = TransientStoreError()

        except Exception:
            session.rollback()
            orders_total.labels(operation=operation, outcome='error').inc()
            raise

        logger.warning(f"Transient failure on order {operation} (attempt {attempt}/{max_attempts}): {error.message}")

    orders_total.labels(operation=operation, outcome='TransientStoreError').inc()
    raise error


def _resolve_account_id(session: Session, item: Dict[str, Any]) -> int:
    if item['account_id'] is not None:
        return item['account_id']
    account_id = order_store.find_account_id_by_email(session, item['account_email'])
    if account_id is None:
        raise AccountNotFoundError(item['account_email'])
    return account_id


def _reserve_sale_slots(session: Session, lines: List[SaleLine]) -> None:
    """Re-reserve the slots of existing lines (reactivating a cancelled sale)."""
    for line in lines:
        if line.account_id is None:
            raise AccountNotFoundError(line.account_email or 'of a deleted line')

    slot_ledger_service.lock_accounts(session, [line.account_id for line in lines])
    for line in lines:
        slot_ledger_service.reserve_slots(session, line.account_id, line.quantity)


def _release_sale_slots(session: Session, sale: Sale) -> List[Dict[str, Any]]:
    """Release the slots of every line; missing accounts are logged and skipped."""
    if not sale.status.consumes_slots:
        return []

    account_ids = [line.account_id for line in sale.lines if line.account_id is not None]
    slot_ledger_service.lock_accounts(session, account_ids)

    released = []
    for line in sale.lines:
        if line.account_id is None:
            logger.warning(
                f"Sale {sale.order_number}: account {line.account_email} no longer exists, "
                f"skipping release of {line.quantity} slot(s)"
            )
            continue
        try:
            account = slot_ledger_service.release_slots(session, line.account_id, line.quantity)
        except AccountNotFoundError:
            logger.warning(
                f"Sale {sale.order_number}: account #{line.account_id} not found, "
                f"skipping release of {line.quantity} slot(s)"
            )
            continue

        released.append({
            'accountId': account.id,
            'accountEmail': account.email,
            'quantity': line.quantity,
            'currentUsers': account.current_users,
            'availableSlots': account.available_slots
        })
    return released


def create_order(payload: Dict[str, Any], session: Session) -> Sale:
    """
    Create a sale and consume its slots in one transaction.

    Raises:
        ValidationError: malformed request (before any transaction)
        AccountNotFoundError: an item references an unknown account
        InsufficientCapacityError: an account lacks free slots
        TransientStoreError: lock contention persisted across all retries
    """
    data = validate_order_payload(payload)
    totals = compute_totals(data['items'], data['discount_rate'])
    order_number = generate_order_number()

    def work():
        # 1. Resolve accounts (stable ids from here on)
        account_ids = [_resolve_account_id(session, item) for item in data['items']]

        # 2. Lock every touched account in id order, then reserve in submission order
        locked = slot_ledger_service.lock_accounts(session, account_ids)
        for item, account_id in zip(data['items'], account_ids):
            if account_id not in locked:
                raise AccountNotFoundError(item['account_email'] or f'#{account_id}')
            slot_ledger_service.reserve_slots(session, account_id, item['quantity'])

        # 3. Persist sale, lines and credentials
        sale = Sale(
            order_number=order_number,
            customer_name=data['customer_name'],
            customer_email=data['customer_email'],
            customer_phone=data['customer_phone'],
            customer_type=data['customer_type'],
            discount_rate=totals['discount_rate'],
            subtotal=totals['subtotal'],
            discount_amount=totals['discount_amount'],
            total_amount=totals['total'],
            status=data['status'],
            payment_method=data['payment_method'],
            notes=data['notes'],
            order_date=data['order_date'] or datetime.now(),
            end_date=data['end_date']
        )
        for position, (item, account_id, line) in enumerate(zip(data['items'], account_ids, totals['lines'])):
            account = locked[account_id]
            sale.lines.append(SaleLine(
                position=position,
                account_id=account_id,
                account_email=account.email,
                product_name=item['product_name'] or account.product_name,
                unit_price=line['unit_price'],
                quantity=line['quantity'],
                line_total=line['line_total']
            ))

        sale_id = order_store.insert_order(session, sale)
        order_store.insert_credentials(session, sale_id, data['credentials'])
        return sale

    sale = _run_in_transaction(session, 'create', work)
    logger.info(
        f"Sale {sale.order_number} created for {sale.customer_name}: "
        f"{sale.slot_count} slot(s), total {sale.total_amount}"
    )
    return sale


def delete_order(order_number: str, session: Session) -> Dict[str, Any]:
    """
    Delete a sale and give its slots back.

    Returns:
        dict with orderNumber, slotsReleased and releasedAccounts

    Raises:
        NotFoundError: no sale with this order number
    """
    def work():
        sale = order_store.get_order_with_items(session, order_number, for_update=True)
        if not sale:
            raise NotFoundError(f'Sale {order_number} not found')

        released = _release_sale_slots(session, sale)
        order_store.delete_order(session, sale)
        return released

    released = _run_in_transaction(session, 'delete', work)
    slots_released = sum(entry['quantity'] for entry in released)
    logger.info(f"Sale {order_number} deleted, {slots_released} slot(s) released")

    return {
        'orderNumber': order_number,
        'slotsReleased': slots_released,
        'releasedAccounts': released
    }


def validate_order_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Validate an update request; line-item fields are refused."""
    if not isinstance(patch, dict):
        raise ValidationError('Request body must be a JSON object')

    forbidden = sorted(LINE_ITEM_FIELDS.intersection(patch))
    if forbidden:
        raise ValidationError(
            'Line items cannot be edited in place; delete the sale and create it again',
            payload={'fields': forbidden}
        )

    fields = {}
    if _get(patch, 'customerName', 'customer_name') is not None:
        fields['customer_name'] = _clean_str(_get(patch, 'customerName', 'customer_name'), 'customerName', 100, required=True)
    for api_names, column, max_length in (
        (('customerEmail', 'customer_email'), 'customer_email', 255),
        (('customerPhone', 'customer_phone'), 'customer_phone', 20),
        (('notes',), 'notes', 2000),
    ):
        if any(name in patch for name in api_names):
            fields[column] = _clean_str(_get(patch, *api_names), api_names[0], max_length)
    if _get(patch, 'paymentMethod', 'payment_method') is not None:
        fields['payment_method'] = _clean_str(_get(patch, 'paymentMethod', 'payment_method'), 'paymentMethod', 20, required=True)
    if _get(patch, 'status') is not None:
        fields['status'] = _parse_status(patch['status'], tuple(SaleStatus))
    if _get(patch, 'orderDate', 'order_date') is not None:
        fields['order_date'] = _parse_datetime(_get(patch, 'orderDate', 'order_date'), 'orderDate')
    if any(name in patch for name in ('endDate', 'end_date')):
        fields['end_date'] = _parse_datetime(_get(patch, 'endDate', 'end_date'), 'endDate')
    if 'credentials' in patch:
        fields['credentials'] = _parse_credentials(patch['credentials'])

    return fields


def update_order(order_number: str, patch: Dict[str, Any], session: Session) -> Sale:
    """
    Patch sale fields other than its line items.

    A status change into or out of ``cancelled`` releases or re-reserves the
    sale's slots inside the same transaction.
    """
    fields = validate_order_patch(patch)

    def work():
        sale = order_store.get_order_with_items(session, order_number, for_update=True)
        if not sale:
            raise NotFoundError(f'Sale {order_number} not found')

        changes = dict(fields)
        new_status = changes.pop('status', None)
        credentials = changes.pop('credentials', None)

        if new_status is not None and new_status is not sale.status:
            if sale.status.consumes_slots and not new_status.consumes_slots:
                _release_sale_slots(session, sale)
            elif not sale.status.consumes_slots and new_status.consumes_slots:
                _reserve_sale_slots(session, sale.lines)
            logger.info(f"Sale {order_number}: status {sale.status.value} -> {new_status.value}")
            sale.status = new_status

        for column, value in changes.items():
            setattr(sale, column, value)

        if credentials is not None:
            sale.credentials.clear()
            session.flush()
            order_store.insert_credentials(session, sale.id, credentials)

        session.flush()
        return sale

    return _run_in_transaction(session, 'update', work)


def get_order(order_number: str, session: Session) -> Sale:
    """Get sale by order number or raise NotFoundError."""
    sale = order_store.get_order_with_items(session, order_number)
    if not sale:
        raise NotFoundError(f'Sale {order_number} not found')
    return sale


def list_orders(
    session: Session,
    status: Optional[str] = None,
    customer_email: Optional[str] = None,
    account_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0
) -> List[Sale]:
    """List sales, newest first, with optional filters."""
    query = session.query(Sale).options(selectinload(Sale.lines))

    if status:
        query = query.filter(Sale.status == _parse_status(status, tuple(SaleStatus)))
    if customer_email:
        query = query.filter(Sale.customer_email == customer_email)
    if account_id is not None:
        query = query.filter(Sale.lines.any(SaleLine.account_id == account_id))

    return query.order_by(Sale.created_at.desc(), Sale.id.desc()).limit(limit).offset(offset).all()


def delete_credential(credential_id: int, session: Session) -> Dict[str, Any]:
    """Delete a single credential of a sale."""
    credential = session.query(AccountCredential).filter(
        AccountCredential.id == credential_id
    ).first()

    if not credential:
        raise NotFoundError(f'Credential {credential_id} not found')

    try:
        session.delete(credential)
        session.commit()
    except Exception:
        session.rollback()
        raise

    return {'id': credential_id, 'message': 'Credential deleted successfully'}
