"""Orders blueprint - sale creation and deletion with slot accounting (JSON API)."""
from flask import Blueprint, request, jsonify, current_app, Response
from typing import Tuple
from subdesk.database import get_session
from subdesk.exceptions import ValidationError
from subdesk.services import order_service

orders_bp = Blueprint('orders', __name__, url_prefix='/orders')


def _json_body() -> dict:
    """Request body as a dict; anything else is a validation error."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _int_arg(name: str, default: int, minimum: int = 0, maximum: int = None) -> int:
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f'{name} must be an integer')
    if value < minimum:
        raise ValidationError(f'{name} must be >= {minimum}')
    if maximum is not None:
        value = min(value, maximum)
    return value


@orders_bp.route('', methods=['POST'])
def create_order() -> Tuple[Response, int]:
    """Create a sale and reserve its slots."""
    db_session = get_session()
    sale = order_service.create_order(_json_body(), db_session)
    return jsonify(sale.to_dict()), 201


@orders_bp.route('', methods=['GET'])
def list_orders() -> Response:
    """List sales (newest first)."""
    db_session = get_session()
    page_size = current_app.config.get('ORDERS_PAGE_SIZE', 50)

    account_id = request.args.get('accountId')
    sales = order_service.list_orders(
        db_session,
        status=request.args.get('status') or None,
        customer_email=request.args.get('customerEmail') or None,
        account_id=_int_arg('accountId', None, minimum=1) if account_id else None,
        limit=_int_arg('limit', page_size, minimum=1, maximum=500),
        offset=_int_arg('offset', 0)
    )
    return jsonify([sale.to_dict(include_credentials=False) for sale in sales])


@orders_bp.route('/<path:order_number>', methods=['GET'])
def get_order(order_number: str) -> Response:
    db_session = get_session()
    sale = order_service.get_order(order_number, db_session)
    return jsonify(sale.to_dict())


@orders_bp.route('/<path:order_number>', methods=['PATCH', 'PUT'])
def update_order(order_number: str) -> Response:
    """Patch sale fields; line items are immutable (delete and recreate)."""
    db_session = get_session()
    sale = order_service.update_order(order_number, _json_body(), db_session)
    return jsonify(sale.to_dict())


@orders_bp.route('/credentials/<int:credential_id>', methods=['DELETE'])
def delete_credential(credential_id: int) -> Response:
    db_session = get_session()
    return jsonify(order_service.delete_credential(credential_id, db_session))


@orders_bp.route('/<path:order_number>', methods=['DELETE'])
def delete_order(order_number: str) -> Response:
    """Delete a sale and release its slots."""
    db_session = get_session()
    result = order_service.delete_order(order_number, db_session)
    return jsonify(result)
