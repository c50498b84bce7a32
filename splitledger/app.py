from __future__ import annotations

from functools import wraps
from typing import Optional

from flask import (
    Flask,
    jsonify,
    request,
    session,
)
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .config import config
from .db import db
from .errors import LedgerError, ValidationError
from .expenses import ExpenseShareStore, ExpenseStore
from .filters import (
    EXPENSE_SORT_SAFELIST,
    GROUP_SORT_SAFELIST,
    SETTLEMENT_SORT_SAFELIST,
    SHARE_SORT_SAFELIST,
    Filters,
)
from .groups import GroupStore
from .log import configure_logging, get_logger
from .membership import GroupMemberStore
from .service import LedgerService
from .settlements import SettlementStore
from .validation import AllocationPolicy, ShareValidator, parse_amount, parse_share_requests

log = get_logger(__name__)


def build_service() -> LedgerService:
    return LedgerService(
        members=GroupMemberStore(db),
        expenses=ExpenseStore(db),
        shares=ExpenseShareStore(db),
        settlements=SettlementStore(db),
        groups=GroupStore(db),
        validator=ShareValidator(AllocationPolicy.parse(config.ALLOCATION_POLICY)),
    )


def create_app(service: Optional[LedgerService] = None) -> Flask:
    configure_logging()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["SESSION_COOKIE_NAME"] = config.SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = config.SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE

    CORS(
        app,
        supports_credentials=True,
        resources={r"/api/*": {"origins": config.CORS_ORIGINS}},
    )

    register_error_handlers(app)
    register_routes(app, service or build_service())
    return app


def require_login(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return func(*args, **kwargs)

    return wrapper


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(LedgerError)
    def ledger_error(exc: LedgerError):
        return jsonify(exc.to_dict()), exc.status

    @app.errorhandler(Exception)
    def unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        log.exception("unhandled_error", path=request.path, method=request.method)
        return jsonify({"error": "server_error"}), 500


def _read_int(key: str, default: int) -> int:
    value = request.args.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError({key: "must be an integer value"}) from None


def _read_filters(default_sort: str, safelist) -> Filters:
    return Filters(
        page=_read_int("page", 1),
        page_size=_read_int("page_size", 20),
        sort=request.args.get("sort", default_sort),
        sort_safelist=tuple(safelist),
    )


def _payload() -> dict:
    payload = request.get_json(force=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError({"body": "must be a JSON object"})
    return payload


def _optional_text(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError({key: "must be a string"})
    return value.strip()


def _optional_int(payload: dict, key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError({key: "must be an integer value"}) from None


def _required_int(payload: dict, key: str) -> int:
    value = _optional_int(payload, key)
    if value is None:
        raise ValidationError({key: "must be provided"})
    return value


def register_routes(app: Flask, ledger: LedgerService) -> None:
    @app.get("/api/health")
    def health():
        return jsonify({"status": "available"})

    # ------------------------
    # Groups
    # ------------------------
    @app.get("/api/groups")
    @require_login
    def list_groups():
        filters = _read_filters("id", GROUP_SORT_SAFELIST)
        groups, metadata = ledger.list_groups(
            session["user_id"],
            filters,
            name=request.args.get("name", ""),
            created_by=_read_int("created_by", 0),
        )
        return jsonify({"groups": [g.to_dict() for g in groups], "metadata": metadata})

    @app.post("/api/groups")
    @require_login
    def create_group():
        payload = _payload()
        group = ledger.create_group(session["user_id"], _optional_text(payload, "name") or "")

        response = jsonify({"group": group.to_dict()})
        response.status_code = 201
        response.headers["Location"] = f"/api/groups/{group.id}"
        return response

    @app.get("/api/groups/<int:group_id>")
    @require_login
    def show_group(group_id: int):
        group = ledger.get_group(group_id, session["user_id"])
        return jsonify({"group": group.to_dict()})

    @app.patch("/api/groups/<int:group_id>")
    @require_login
    def update_group(group_id: int):
        payload = _payload()
        group = ledger.update_group(
            group_id,
            session["user_id"],
            name=_optional_text(payload, "name"),
            version=_optional_int(payload, "version"),
        )
        return jsonify({"group": group.to_dict()})

    @app.delete("/api/groups/<int:group_id>")
    @require_login
    def delete_group(group_id: int):
        ledger.delete_group(group_id, session["user_id"])
        return jsonify({"status": "deleted"}), 200

    # ------------------------
    # Expenses
    # ------------------------
    @app.get("/api/groups/<int:group_id>/expenses")
    @require_login
    def list_expenses(group_id: int):
        filters = _read_filters("id", EXPENSE_SORT_SAFELIST)
        expenses, metadata = ledger.list_expenses(
            group_id,
            session["user_id"],
            filters,
            description=request.args.get("description", ""),
            paid_by=_read_int("paid_by", 0),
        )
        return jsonify({"expenses": [e.to_dict() for e in expenses], "metadata": metadata})

    @app.post("/api/groups/<int:group_id>/expenses")
    @require_login
    def create_expense(group_id: int):
        payload = _payload()
        if payload.get("amount") is None:
            raise ValidationError({"amount": "must be provided"})

        amount = parse_amount(payload["amount"])
        description = _optional_text(payload, "description") or ""
        shares = None
        if payload.get("participants") is not None:
            shares = parse_share_requests(payload["participants"])

        expense, batch = ledger.create_expense(group_id, session["user_id"], amount, description, shares)

        body = {"expense": expense.to_dict()}
        if batch is not None:
            body["participants"] = batch.to_dict()
        response = jsonify(body)
        response.status_code = 201
        response.headers["Location"] = f"/api/groups/{group_id}/expenses/{expense.id}"
        return response

    @app.get("/api/groups/<int:group_id>/expenses/<int:expense_id>")
    @require_login
    def show_expense(group_id: int, expense_id: int):
        expense = ledger.get_expense(group_id, session["user_id"], expense_id)
        return jsonify({"expense": expense.to_dict()})

    @app.patch("/api/groups/<int:group_id>/expenses/<int:expense_id>")
    @require_login
    def update_expense(group_id: int, expense_id: int):
        payload = _payload()
        amount = parse_amount(payload["amount"]) if payload.get("amount") is not None else None
        description = _optional_text(payload, "description")

        expense = ledger.update_expense(
            group_id,
            session["user_id"],
            expense_id,
            amount=amount,
            description=description,
            version=_optional_int(payload, "version"),
        )
        return jsonify({"expense": expense.to_dict()})

    @app.delete("/api/groups/<int:group_id>/expenses/<int:expense_id>")
    @require_login
    def delete_expense(group_id: int, expense_id: int):
        ledger.delete_expense(group_id, session["user_id"], expense_id)
        return jsonify({"status": "deleted"}), 200

    # ------------------------
    # Participants
    # ------------------------
    @app.get("/api/groups/<int:group_id>/expenses/<int:expense_id>/participants")
    @require_login
    def list_participants(group_id: int, expense_id: int):
        filters = _read_filters("id", SHARE_SORT_SAFELIST)
        shares, metadata = ledger.list_shares(group_id, session["user_id"], expense_id, filters)
        return jsonify({"participants": [s.to_dict() for s in shares], "metadata": metadata})

    @app.post("/api/groups/<int:group_id>/expenses/<int:expense_id>/participants")
    @require_login
    def add_participants(group_id: int, expense_id: int):
        requests = parse_share_requests(request.get_json(force=True))
        result = ledger.add_shares(group_id, session["user_id"], expense_id, requests)
        return jsonify(result.to_dict()), 201

    @app.patch("/api/groups/<int:group_id>/expenses/<int:expense_id>/participants/<int:participant_id>")
    @require_login
    def update_participant(group_id: int, expense_id: int, participant_id: int):
        payload = _payload()
        if payload.get("amount_owed") is None:
            raise ValidationError({"amount_owed": "must be provided"})

        share = ledger.update_share(
            group_id,
            session["user_id"],
            expense_id,
            participant_id,
            parse_amount(payload["amount_owed"], "amount_owed"),
            version=_optional_int(payload, "version"),
        )
        return jsonify({"participant": share.to_dict()})

    @app.delete("/api/groups/<int:group_id>/expenses/<int:expense_id>/participants/<int:participant_id>")
    @require_login
    def delete_participant(group_id: int, expense_id: int, participant_id: int):
        ledger.delete_share(group_id, session["user_id"], expense_id, participant_id)
        return jsonify({"status": "deleted"}), 200

    # ------------------------
    # Settlements
    # ------------------------
    @app.get("/api/groups/<int:group_id>/settlements")
    @require_login
    def list_settlements(group_id: int):
        filters = _read_filters("settled_at", SETTLEMENT_SORT_SAFELIST)
        settlements, metadata = ledger.list_settlements(group_id, session["user_id"], filters)
        return jsonify({"settlements": [s.to_dict() for s in settlements], "metadata": metadata})

    @app.post("/api/groups/<int:group_id>/settlements")
    @require_login
    def record_settlement(group_id: int):
        payload = _payload()
        if payload.get("amount") is None:
            raise ValidationError({"amount": "must be provided"})

        settlement = ledger.record_settlement(
            group_id,
            session["user_id"],
            payer_id=_required_int(payload, "payer_id"),
            payee_id=_required_int(payload, "payee_id"),
            amount=parse_amount(payload["amount"]),
        )
        return jsonify({"settlement": settlement.to_dict()}), 201

    @app.get("/api/groups/<int:group_id>/settlements/<int:settlement_id>")
    @require_login
    def show_settlement(group_id: int, settlement_id: int):
        settlement = ledger.get_settlement(group_id, session["user_id"], settlement_id)
        return jsonify({"settlement": settlement.to_dict()})

    @app.delete("/api/groups/<int:group_id>/settlements/<int:settlement_id>")
    @require_login
    def delete_settlement(group_id: int, settlement_id: int):
        ledger.delete_settlement(group_id, session["user_id"], settlement_id)
        return jsonify({"status": "deleted"}), 200

    # ------------------------
    # Balances
    # ------------------------
    @app.get("/api/groups/<int:group_id>/balances")
    @require_login
    def group_balances(group_id: int):
        balances, transfers = ledger.settle_up(group_id, session["user_id"])
        return jsonify(
            {
                "balances": [b.to_dict() for b in balances],
                "suggested_settlements": [t.to_dict() for t in transfers],
            }
        )

    # ------------------------
    # Members
    # ------------------------
    @app.get("/api/groups/<int:group_id>/members")
    @require_login
    def list_members(group_id: int):
        include_inactive = request.args.get("include_inactive", "").lower() in ("1", "true", "yes")
        members = ledger.list_members(group_id, session["user_id"], include_inactive)
        return jsonify({"members": [m.to_dict() for m in members]})

    @app.post("/api/groups/<int:group_id>/members")
    @require_login
    def join_group(group_id: int):
        member = ledger.join_group(group_id, session["user_id"])
        return jsonify({"member": member.to_dict()}), 201

    @app.delete("/api/groups/<int:group_id>/members/<int:user_id>")
    @require_login
    def remove_member(group_id: int, user_id: int):
        member = ledger.remove_member(group_id, session["user_id"], user_id)
        return jsonify({"member": member.to_dict()})

    @app.post("/api/groups/<int:group_id>/members/<int:user_id>/reinstate")
    @require_login
    def reinstate_member(group_id: int, user_id: int):
        member = ledger.reinstate_member(group_id, session["user_id"], user_id)
        return jsonify({"member": member.to_dict()})

    @app.get("/api/groups/<int:group_id>/members/<int:user_id>/history")
    @require_login
    def member_history(group_id: int, user_id: int):
        events = ledger.member_history(group_id, session["user_id"], user_id)
        return jsonify({"history": [e.to_dict() for e in events]})


app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
