from decouple import config
from flask import Flask, jsonify

from admin.sweep_routes import create_sweep_blueprint
from shared.crypto.clients.evm_client import ChainClient
from shared.logger import setup_logging
from shared.sweep_config import SweepSettings
from wallet.crypto_reserve_scheduler import build_scheduler
from wallet.reserve_service import ReserveService

logger = setup_logging(__name__)


def create_app(settings: SweepSettings = None, session_factory=None, chain: ChainClient = None,
               admin_token: str = None, start_scheduler: bool = None) -> Flask:
    """Admin API for the sweep job.

    The periodic scheduler only starts here when SWEEP_SCHEDULER_IN_API is
    set (or start_scheduler=True); normally the sweep-scheduler worker runs
    it and this process serves manual runs and balances.
    """
    settings = settings or SweepSettings.from_env()
    if session_factory is None:
        from db.connection import get_session, init_db
        init_db()
        session_factory = get_session

    chain_config = settings.chain_config()
    if chain is None and chain_config is not None:
        chain = ChainClient(chain_config)

    scheduler = build_scheduler(settings, session_factory, chain=chain)
    reserve_service = ReserveService(chain, settings.treasury_address)

    app = Flask(__name__)
    app.extensions['sweep_scheduler'] = scheduler

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "ok", "sweeping_enabled": scheduler.enabled})

    app.register_blueprint(
        create_sweep_blueprint(scheduler, reserve_service, session_factory,
                               admin_token=admin_token or config("ADMIN_API_TOKEN", default=None)),
        url_prefix='/admin',
    )

    if start_scheduler is None:
        start_scheduler = settings.scheduler_in_api
    if start_scheduler:
        scheduler.start()
    return app


def main():
    port = config('PORT', default=3000, cast=int)
    create_app().run(host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
