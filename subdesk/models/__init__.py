"""Models package - exports all SQLAlchemy models."""
from subdesk.models.account import Account
from subdesk.models.sale import Sale, SaleStatus, CustomerType
from subdesk.models.sale_line import SaleLine
from subdesk.models.account_credential import AccountCredential

__all__ = [
    'Account',
    'Sale', 'SaleStatus', 'CustomerType', 'SaleLine',
    'AccountCredential',
]
