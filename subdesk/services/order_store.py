"""
Order lifecycle store.

Query operations over the sale, sale_line, account_credential and account
tables. Functions only flush; the caller owns the transaction.
"""
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import func, update
from sqlalchemy.orm import Session, selectinload
from subdesk.exceptions import TransientStoreError
from subdesk.models import Account, AccountCredential, Sale, SaleLine, SaleStatus


def insert_order(session: Session, sale: Sale) -> int:
    """Insert sale with its lines and return the new id."""
    session.add(sale)
    session.flush()
    return sale.id


def insert_credentials(session: Session, sale_id: int, credentials: Iterable[Dict[str, Any]]) -> List[AccountCredential]:
    """Attach login credentials to a sale."""
    rows = []
    for cred in credentials or []:
        row = AccountCredential(
            sale_id=sale_id,
            username=cred.get('username') or None,
            password=cred.get('password') or None,
            login_url=cred.get('login_url') or None,
            additional_info=cred.get('additional_info') or None,
            is_active=cred.get('is_active') is not False
        )
        session.add(row)
        rows.append(row)
    session.flush()
    return rows


def get_order_with_items(session: Session, order_number: str, for_update: bool = False) -> Optional[Sale]:
    """Load a sale by order number with lines and credentials."""
    query = session.query(Sale).options(
        selectinload(Sale.lines),
        selectinload(Sale.credentials)
    ).filter(Sale.order_number == order_number)

    if for_update:
        query = query.with_for_update(of=Sale).populate_existing()

    return query.first()


def delete_order(session: Session, sale: Sale) -> int:
    """Delete sale; lines and credentials go with it."""
    session.delete(sale)
    session.flush()
    return 1


def get_account_for_update(session: Session, account_id: int) -> Optional[Account]:
    """Read account row under a row lock (SELECT ... FOR UPDATE)."""
    return session.query(Account).filter(
        Account.id == account_id
    ).with_for_update().populate_existing().first()


def find_account_id_by_email(session: Session, email: str) -> Optional[int]:
    """Resolve an account email to its id (case-insensitive, lowest id wins)."""
    if not email:
        return None
    row = session.query(Account.id).filter(
        func.lower(Account.email) == email.strip().lower()
    ).order_by(Account.id).first()
    return row[0] if row else None


def update_account_slots(
    session: Session,
    account: Account,
    current_users: int,
    available_slots: int,
    max_user_slots: Optional[int] = None
) -> Account:
    """
    Write new slot counters (and optionally capacity) for a locked account.

    The update only matches while the row still holds the counters that were
    read under lock; a miss means another writer got in between.
    """
    values = {
        'current_users': current_users,
        'available_slots': available_slots,
        'updated_at': func.now()
    }
    if max_user_slots is not None:
        values['max_user_slots'] = max_user_slots

    result = session.execute(
        update(Account)
        .where(
            Account.id == account.id,
            Account.current_users == account.current_users,
            Account.available_slots == account.available_slots
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        raise TransientStoreError(
            f'Slot counters of account #{account.id} changed concurrently'
        )

    session.refresh(account)
    return account


def sum_active_quantities(session: Session) -> Dict[int, int]:
    """Slots held per account by sales that still consume them."""
    consuming = [status for status in SaleStatus if status.consumes_slots]
    rows = session.query(
        SaleLine.account_id,
        func.coalesce(func.sum(SaleLine.quantity), 0)
    ).join(Sale, Sale.id == SaleLine.sale_id).filter(
        SaleLine.account_id.isnot(None),
        Sale.status.in_(consuming)
    ).group_by(SaleLine.account_id).all()

    return {account_id: int(total) for account_id, total in rows}


def delete_account(session: Session, account: Account) -> int:
    """Delete an account; lines of old sales keep a NULL reference."""
    session.delete(account)
    session.flush()
    return 1
