"""Slot audit service - compare account counters with the sales that hold slots."""
import logging
from typing import Any, Dict, List
from sqlalchemy.orm import Session
from subdesk.models import Account
from subdesk.services import order_store

logger = logging.getLogger(__name__)


def find_slot_drift(session: Session) -> List[Dict[str, Any]]:
    """
    Accounts whose current_users differs from the slots held by active sales.

    Returns:
        list of dicts with account_id, email, max_user_slots, current_users,
        available_slots and expected_users
    """
    held = order_store.sum_active_quantities(session)
    drift = []

    for account in session.query(Account).order_by(Account.id).all():
        expected = held.get(account.id, 0)
        consistent = (
            account.current_users == expected
            and account.available_slots == account.max_user_slots - account.current_users
        )
        if consistent:
            continue
        drift.append({
            'account_id': account.id,
            'email': account.email,
            'max_user_slots': account.max_user_slots,
            'current_users': account.current_users,
            'available_slots': account.available_slots,
            'expected_users': expected
        })

    return drift


def repair_slot_drift(session: Session) -> List[Dict[str, Any]]:
    """
    Rewrite drifted counters from the active sales, under row locks.

    Accounts oversold beyond max_user_slots are reported but left untouched:
    fixing those needs a human decision about which sale to cancel.
    """
    repaired = []
    try:
        for entry in find_slot_drift(session):
            account = order_store.get_account_for_update(session, entry['account_id'])
            if account is None:
                continue

            expected = order_store.sum_active_quantities(session).get(account.id, 0)
            if expected > account.max_user_slots:
                logger.error(
                    f"Account {account.id} is oversold: {expected} slots held, "
                    f"{account.max_user_slots} available in total"
                )
                continue

            order_store.update_account_slots(
                session,
                account,
                current_users=expected,
                available_slots=account.max_user_slots - expected
            )
            logger.warning(
                f"Account {account.id} slot counters repaired: "
                f"current_users {entry['current_users']} -> {expected}"
            )
            repaired.append({**entry, 'current_users': expected})

        session.commit()
    except Exception:
        session.rollback()
        raise

    return repaired
