"""
Accounts Blueprint — organisations and their reference procedures.

Endpoints:
    GET    /api/v1/accounts                          — list accounts
    POST   /api/v1/accounts                          — create account
    GET    /api/v1/accounts/<id>                     — account detail incl. procedure history
    POST   /api/v1/accounts/<id>/procedures          — multipart PDF upload (field "file")

All routes require a supervisor.
"""

from flask import Blueprint, jsonify, request

from crisis_trainer.auth import require_supervisor
from crisis_trainer.services import account_service
from crisis_trainer.utils.helpers import json_body

accounts_bp = Blueprint("accounts", __name__, url_prefix="/api/v1")


@accounts_bp.route("/accounts", methods=["GET"])
@require_supervisor
def list_accounts():
    return jsonify([a.to_dict() for a in account_service.list_accounts()])


@accounts_bp.route("/accounts", methods=["POST"])
@require_supervisor
def create_account():
    account = account_service.create_account(json_body())
    return jsonify(account.to_dict()), 201


@accounts_bp.route("/accounts/<account_id>", methods=["GET"])
@require_supervisor
def get_account(account_id):
    return jsonify(account_service.get_account(account_id).to_dict())


@accounts_bp.route("/accounts/<account_id>/procedures", methods=["POST"])
@require_supervisor
def upload_procedure(account_id):
    account = account_service.upload_procedure(account_id, request.files.get("file"))
    return jsonify(account.to_dict()), 201
