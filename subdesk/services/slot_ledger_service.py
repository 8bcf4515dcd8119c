"""
Slot ledger - reserve and release user slots on shared accounts.

Every counter write happens on a row read with SELECT ... FOR UPDATE and goes
through a conditional update, so two transactions can never both pass the
capacity check against the same stale read. Callers own the transaction.

Lock ordering: when one sale touches several accounts, ``lock_accounts`` takes
the row locks in ascending account id before any counter is written. Sales
over overlapping accounts therefore always lock in the same order.
"""
import logging
from typing import Dict, Iterable
from sqlalchemy.orm import Session
from subdesk.exceptions import AccountNotFoundError, InsufficientCapacityError, ValidationError
from subdesk.models import Account
from subdesk.services import order_store
from subdesk.blueprints.metrics import slot_operations_total

logger = logging.getLogger(__name__)


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f'Slot quantity must be a positive integer, got {quantity!r}')
    return quantity


def lock_accounts(session: Session, account_ids: Iterable[int]) -> Dict[int, Account]:
    """
    Lock account rows in ascending id order.

    Returns the accounts found; ids with no row are simply absent.
    """
    locked = {}
    for account_id in sorted(set(account_ids)):
        account = order_store.get_account_for_update(session, account_id)
        if account is not None:
            locked[account_id] = account
    return locked


def reserve_slots(session: Session, account_id: int, quantity: int) -> Account:
    """
    Consume ``quantity`` slots on an account.

    Raises:
        AccountNotFoundError: account does not exist
        InsufficientCapacityError: fewer than ``quantity`` slots available
    """
    quantity = _validate_quantity(quantity)

    account = order_store.get_account_for_update(session, account_id)
    if account is None:
        slot_operations_total.labels(operation='reserve', outcome='account_not_found').inc()
        raise AccountNotFoundError(f'#{account_id}')

    if account.available_slots < quantity:
        slot_operations_total.labels(operation='reserve', outcome='insufficient_capacity').inc()
        logger.info(
            f"Reserve refused on account {account.id}: requested {quantity}, "
            f"available {account.available_slots}"
        )
        raise InsufficientCapacityError(account.id, account.email, quantity, account.available_slots)

    order_store.update_account_slots(
        session,
        account,
        current_users=account.current_users + quantity,
        available_slots=account.available_slots - quantity
    )
    slot_operations_total.labels(operation='reserve', outcome='ok').inc()
    logger.debug(f"Reserved {quantity} slot(s) on account {account.id}")
    return account


def release_slots(session: Session, account_id: int, quantity: int) -> Account:
    """
    Give ``quantity`` slots back to an account.

    Clamped: current_users never drops below 0 and available_slots never
    exceeds max_user_slots, so a duplicate release is harmless.

    Raises:
        AccountNotFoundError: account does not exist (caller decides if fatal)
    """
    quantity = _validate_quantity(quantity)

    account = order_store.get_account_for_update(session, account_id)
    if account is None:
        slot_operations_total.labels(operation='release', outcome='account_not_found').inc()
        raise AccountNotFoundError(f'#{account_id}')

    current_users = max(0, account.current_users - quantity)
    available_slots = account.max_user_slots - current_users

    if current_users != account.current_users - quantity:
        logger.warning(
            f"Release of {quantity} slot(s) on account {account.id} clamped: "
            f"only {account.current_users} in use"
        )

    order_store.update_account_slots(
        session,
        account,
        current_users=current_users,
        available_slots=available_slots
    )
    slot_operations_total.labels(operation='release', outcome='ok').inc()
    logger.debug(f"Released {quantity} slot(s) on account {account.id}")
    return account
