"""Account service - administrative account creation and edits."""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from subdesk.exceptions import AccountInUseError, NotFoundError, ValidationError
from subdesk.models import Account
from subdesk.services import order_store

logger = logging.getLogger(__name__)

# Slot counters are owned by the slot ledger
READ_ONLY_FIELDS = {'currentUsers', 'current_users', 'availableSlots', 'available_slots'}

TEXT_FIELDS = (
    # (api name, legacy name, column, max length)
    ('productName', 'product_name', 'product_name', 100),
    ('label', 'label', 'label', 100),
    ('email', 'email', 'email', 255),
    ('serviceType', 'service_type', 'service_type', 50),
    ('description', 'description', 'description', 2000),
)


def _parse_max_user_slots(raw) -> int:
    if isinstance(raw, bool):
        raise ValidationError('maxUserSlots must be an integer >= 1')
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError('maxUserSlots must be an integer >= 1')
    if value < 1 or str(raw).strip() not in (str(value), f'{value}.0'):
        raise ValidationError('maxUserSlots must be an integer >= 1')
    return value


def _parse_cost(raw) -> Optional[Decimal]:
    if raw is None or raw == '':
        return None
    try:
        cost = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError('cost must be a number')
    if not cost.is_finite() or cost < 0:
        raise ValidationError('cost must be a non-negative number')
    return cost


def _text_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for api_name, legacy_name, column, max_length in TEXT_FIELDS:
        key = api_name if api_name in payload else legacy_name
        if key not in payload:
            continue
        value = payload[key]
        if value is not None and not isinstance(value, str):
            raise ValidationError(f'{api_name} must be a string')
        value = (value or '').strip() or None
        if value and len(value) > max_length:
            raise ValidationError(f'{api_name} must be at most {max_length} characters')
        values[column] = value
    return values


def create_account(payload: Dict[str, Any], session: Session) -> Account:
    """Create an account with all of its slots free."""
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')

    forbidden = sorted(READ_ONLY_FIELDS.intersection(payload))
    if forbidden:
        raise ValidationError('Slot counters cannot be set directly', payload={'fields': forbidden})

    values = _text_fields(payload)
    if not values.get('product_name'):
        raise ValidationError('productName is required')

    max_user_slots = _parse_max_user_slots(payload.get('maxUserSlots', payload.get('max_user_slots', 1)))

    account = Account(
        max_user_slots=max_user_slots,
        current_users=0,
        available_slots=max_user_slots,
        cost=_parse_cost(payload.get('cost')),
        is_active=payload.get('isActive', payload.get('is_active', True)) is not False,
        **values
    )

    try:
        session.add(account)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"Account {account.id} created with {max_user_slots} slot(s)")
    return account


def update_account(account_id: int, patch: Dict[str, Any], session: Session) -> Account:
    """
    Patch administrative fields of an account.

    Capacity changes keep available_slots = max_user_slots - current_users and
    may not drop below the slots already sold.
    """
    if not isinstance(patch, dict):
        raise ValidationError('Request body must be a JSON object')

    forbidden = sorted(READ_ONLY_FIELDS.intersection(patch))
    if forbidden:
        raise ValidationError('Slot counters cannot be set directly', payload={'fields': forbidden})

    values = _text_fields(patch)
    if 'product_name' in values and not values['product_name']:
        raise ValidationError('productName cannot be empty')
    if 'cost' in patch:
        values['cost'] = _parse_cost(patch['cost'])
    if 'isActive' in patch or 'is_active' in patch:
        values['is_active'] = patch.get('isActive', patch.get('is_active')) is not False

    raw_max = patch.get('maxUserSlots', patch.get('max_user_slots'))
    new_max = _parse_max_user_slots(raw_max) if raw_max is not None else None

    try:
        account = order_store.get_account_for_update(session, account_id)
        if account is None:
            raise NotFoundError(f'Account {account_id} not found')

        if new_max is not None and new_max != account.max_user_slots:
            if new_max < account.current_users:
                raise ValidationError(
                    f'maxUserSlots cannot be lower than the {account.current_users} slot(s) already sold'
                )
            order_store.update_account_slots(
                session,
                account,
                current_users=account.current_users,
                available_slots=new_max - account.current_users,
                max_user_slots=new_max
            )

        for column, value in values.items():
            setattr(account, column, value)

        session.commit()
    except Exception:
        session.rollback()
        raise

    return account


def delete_account(account_id: int, session: Session) -> Dict[str, Any]:
    """
    Permanently delete an account.

    Refused while any active or completed sale holds slots on it, or while
    its counters still show slots in use.

    Raises:
        NotFoundError: account does not exist
        AccountInUseError: slots are still held
    """
    try:
        account = order_store.get_account_for_update(session, account_id)
        if account is None:
            raise NotFoundError(f'Account {account_id} not found')

        held = order_store.sum_active_quantities(session).get(account.id, 0)
        if held > 0 or account.current_users > 0:
            raise AccountInUseError(account.id, max(held, account.current_users))

        product_name = account.product_name
        order_store.delete_account(session, account)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"Account {account_id} ({product_name}) deleted")
    return {
        'id': account_id,
        'productName': product_name,
        'message': f'Account "{product_name}" permanently deleted'
    }


def get_account(account_id: int, session: Session) -> Account:
    account = session.get(Account, account_id)
    if account is None:
        raise NotFoundError(f'Account {account_id} not found')
    return account


def list_accounts(session: Session, status: str = 'all') -> List[Account]:
    """List accounts; status is 'active', 'inactive' or 'all'."""
    query = session.query(Account)
    if status == 'active':
        query = query.filter(Account.is_active.is_(True))
    elif status == 'inactive':
        query = query.filter(Account.is_active.is_(False))
    elif status != 'all':
        raise ValidationError("status must be one of: active, inactive, all")
    return query.order_by(Account.id).all()
