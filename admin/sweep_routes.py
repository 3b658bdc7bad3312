import hmac
from functools import wraps
from typing import Callable, Optional

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.orm import Session

from shared.logger import setup_logging
from wallet.crypto_reserve_scheduler import SweepScheduler
from wallet.reserve_service import ReserveService
from wallet.sweep_repository import SweepRepository

logger = setup_logging(__name__)

MAX_HISTORY_LIMIT = 500


def create_sweep_blueprint(scheduler: SweepScheduler, reserve_service: ReserveService,
                           session_factory: Callable[[], Session],
                           admin_token: Optional[str]) -> Blueprint:
    """Operator endpoints for the sweep job: manual run, balances, history"""
    sweep_bp = Blueprint('sweeps', __name__)

    def admin_token_required(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not admin_token:
                current_app.logger.warning("ADMIN_API_TOKEN not set, refusing sweep admin request")
                return jsonify({"success": False, "error": "Admin access not configured"}), 401
            supplied = request.headers.get("X-Admin-Token", "")
            if not hmac.compare_digest(supplied.encode(), admin_token.encode()):
                return jsonify({"success": False, "error": "Unauthorized"}), 401
            return f(*args, **kwargs)
        return decorated_function

    @sweep_bp.route('/sweeps/run', methods=['POST'])
    @admin_token_required
    def run_sweep():
        """Run a sweep now, with the same logic as the scheduled job"""
        if not scheduler.enabled:
            return jsonify({"success": False, "error": "Sweeping is disabled by configuration"}), 503
        summary = scheduler.trigger_manual()
        if summary is None:
            return jsonify({"success": False, "error": "A sweep run is already in progress"}), 409
        return jsonify({"success": True, "summary": summary.to_dict()})

    @sweep_bp.route('/sweeps/status', methods=['GET'])
    @admin_token_required
    def sweep_status():
        last = scheduler.last_summary
        return jsonify({
            "success": True,
            "enabled": scheduler.enabled,
            "scheduler_running": scheduler.running,
            "sweep_in_progress": scheduler.is_sweeping(),
            "last_run": last.to_dict() if last else None,
        })

    @sweep_bp.route('/sweeps/treasury-balance', methods=['GET'])
    @admin_token_required
    def treasury_balance():
        balance = reserve_service.get_treasury_balance()
        if balance is None:
            return jsonify({"success": False, "error": "Treasury balance unavailable"}), 503
        return jsonify({"success": True, **balance})

    @sweep_bp.route('/sweeps/address-balance/<address>', methods=['GET'])
    @admin_token_required
    def address_balance(address):
        try:
            balance = reserve_service.get_address_balance(address)
        except ValueError as e:
            return jsonify({"success": False, "error": str(e)}), 400
        if balance is None:
            return jsonify({"success": False, "error": "Balance unavailable"}), 503
        return jsonify({"success": True, **balance})

    @sweep_bp.route('/sweeps/history', methods=['GET'])
    @admin_token_required
    def sweep_history():
        user_id = request.args.get('user_id', type=int)
        limit = min(request.args.get('limit', default=50, type=int), MAX_HISTORY_LIMIT)
        session = session_factory()
        try:
            records = SweepRepository(session).get_sweep_history(user_id=user_id, limit=limit)
            return jsonify({"success": True, "sweeps": [r.to_dict() for r in records]})
        finally:
            session.close()

    return sweep_bp
