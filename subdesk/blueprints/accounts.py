"""Accounts blueprint - administrative account management (JSON API)."""
from flask import Blueprint, request, jsonify, Response
from typing import Tuple
from subdesk.database import get_session
from subdesk.exceptions import ValidationError
from subdesk.services import account_service

accounts_bp = Blueprint('accounts', __name__, url_prefix='/accounts')


@accounts_bp.route('', methods=['GET'])
def list_accounts() -> Response:
    """List accounts with their slot counters."""
    db_session = get_session()
    status = request.args.get('status', 'all').strip().lower()
    accounts = account_service.list_accounts(db_session, status)
    return jsonify([account.to_dict() for account in accounts])


@accounts_bp.route('/<int:account_id>', methods=['GET'])
def get_account(account_id: int) -> Response:
    db_session = get_session()
    return jsonify(account_service.get_account(account_id, db_session).to_dict())


@accounts_bp.route('', methods=['POST'])
def create_account() -> Tuple[Response, int]:
    db_session = get_session()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    account = account_service.create_account(data, db_session)
    return jsonify(account.to_dict()), 201


@accounts_bp.route('/<int:account_id>', methods=['PATCH'])
def update_account(account_id: int) -> Response:
    db_session = get_session()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    account = account_service.update_account(account_id, data, db_session)
    return jsonify(account.to_dict())


@accounts_bp.route('/<int:account_id>', methods=['DELETE'])
def delete_account(account_id: int) -> Response:
    """Delete an account that no sale holds slots on."""
    db_session = get_session()
    return jsonify(account_service.delete_account(account_id, db_session))
