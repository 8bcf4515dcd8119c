"""Custom exceptions for the subdesk application."""


class SubdeskError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv


class ValidationError(SubdeskError):
    """Malformed request, rejected before any transaction is opened."""
    def __init__(self, message, payload=None):
        super().__init__(message, 400, payload)


class NotFoundError(SubdeskError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class AccountNotFoundError(NotFoundError):
    """A line item references an account that does not exist."""
    def __init__(self, account_ref):
        self.account_ref = account_ref
        super().__init__(f"Account {account_ref} not found", payload={'account': str(account_ref)})


class InsufficientCapacityError(SubdeskError):
    """Raised when an account has fewer available slots than requested."""
    def __init__(self, account_id, account_email, requested, available):
        self.account_id = account_id
        self.account_email = account_email
        self.requested = requested
        self.available = available
        label = account_email or f"#{account_id}"
        message = f"Not enough available slots on account {label}: requested {requested}, available {available}"
        super().__init__(message, status_code=409, payload={
            'accountId': account_id,
            'accountEmail': account_email,
            'requested': requested,
            'available': available,
        })


class TransientStoreError(SubdeskError):
    """Lock timeout, deadlock or concurrent write; rolled back and safe to retry."""
    def __init__(self, message="The operation conflicted with a concurrent transaction, please retry"):
        super().__init__(message, 503)


class AccountInUseError(SubdeskError):
    """Raised when deleting an account whose slots are still held by sales."""
    def __init__(self, account_id, held_slots):
        self.account_id = account_id
        self.held_slots = held_slots
        message = f"Account #{account_id} still has {held_slots} slot(s) held by active sales"
        super().__init__(message, status_code=409, payload={
            'accountId': account_id,
            'heldSlots': held_slots,
        })
