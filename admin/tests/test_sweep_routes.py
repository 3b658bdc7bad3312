import os
from unittest.mock import patch

import pytest
from flask import Flask

from admin.app import create_app, main
from admin.sweep_routes import create_sweep_blueprint
from shared.sweep_config import SweepSettings
from wallet.crypto_reserve_scheduler import SweepScheduler
from wallet.crypto_sweeper_service import SweepExecutor
from wallet.reserve_service import ReserveService

TREASURY = "0x000000000000000000000000000000000000dEaD"
TOKEN = "operator-token"
AUTH = {"X-Admin-Token": TOKEN}


@pytest.fixture
def scheduler(vault, chain, session_factory):
    executor = SweepExecutor(vault, chain, TREASURY, confirmation_timeout=0)
    return SweepScheduler(executor, session_factory, user_delay_seconds=0)


def build_client(scheduler, chain, session_factory, admin_token=TOKEN):
    app = Flask(__name__)
    app.register_blueprint(
        create_sweep_blueprint(scheduler, ReserveService(chain, TREASURY), session_factory, admin_token),
        url_prefix='/admin',
    )
    return app.test_client()


@pytest.fixture
def client(scheduler, chain, session_factory):
    return build_client(scheduler, chain, session_factory)


def test_requests_without_token_are_rejected(client):
    assert client.post('/admin/sweeps/run').status_code == 401
    assert client.get('/admin/sweeps/status', headers={"X-Admin-Token": "wrong"}).status_code == 401


def test_unconfigured_token_rejects_everything(scheduler, chain, session_factory):
    client = build_client(scheduler, chain, session_factory, admin_token=None)
    assert client.get('/admin/sweeps/status', headers=AUTH).status_code == 401


def test_manual_run_returns_summary(client, chain, make_user):
    user = make_user()
    chain.balances[user.deposit_address] = 1_000_000

    response = client.post('/admin/sweeps/run', headers=AUTH)

    assert response.status_code == 200
    summary = response.get_json()["summary"]
    assert summary["trigger"] == "manual"
    assert summary["counts"] == {"swept": 1, "skipped": 0, "failed": 0}
    assert summary["total_swept_wei"] == "580000"
    assert summary["swept"][0]["user_id"] == user.id


def test_manual_run_while_sweeping_conflicts(client, scheduler):
    scheduler._run_lock.acquire()
    try:
        response = client.post('/admin/sweeps/run', headers=AUTH)
    finally:
        scheduler._run_lock.release()
    assert response.status_code == 409


def test_manual_run_when_disabled(chain, session_factory):
    client = build_client(SweepScheduler(None, session_factory), chain, session_factory)
    assert client.post('/admin/sweeps/run', headers=AUTH).status_code == 503


def test_status_reports_last_run(client, scheduler):
    scheduler.run_once()
    body = client.get('/admin/sweeps/status', headers=AUTH).get_json()
    assert body["enabled"] is True
    assert body["sweep_in_progress"] is False
    assert body["last_run"]["trigger"] == "scheduled"


def test_treasury_balance(client, chain):
    chain.balances[TREASURY] = 10**18
    body = client.get('/admin/sweeps/treasury-balance', headers=AUTH).get_json()
    assert body["balance_wei"] == str(10**18)


def test_treasury_balance_unavailable(client, chain):
    chain.unreachable.add(TREASURY)
    assert client.get('/admin/sweeps/treasury-balance', headers=AUTH).status_code == 503


def test_address_balance_rejects_invalid_address(client):
    assert client.get('/admin/sweeps/address-balance/0xnope', headers=AUTH).status_code == 400


def test_history(client, chain, make_user):
    first, second = make_user(), make_user()
    chain.balances[first.deposit_address] = 1_000_000
    chain.balances[second.deposit_address] = 2_000_000
    client.post('/admin/sweeps/run', headers=AUTH)

    body = client.get('/admin/sweeps/history', headers=AUTH).get_json()
    assert len(body["sweeps"]) == 2

    body = client.get(f'/admin/sweeps/history?user_id={second.id}', headers=AUTH).get_json()
    assert [s["user_id"] for s in body["sweeps"]] == [second.id]
    assert body["sweeps"][0]["amount_swept_wei"] == "1580000"


def test_app_without_node_serves_health_with_sweeping_disabled(session_factory):
    settings = SweepSettings(rpc_url=None, treasury_address=None, encryption_key=None)
    app = create_app(settings, session_factory=session_factory, admin_token=TOKEN, start_scheduler=False)
    client = app.test_client()

    assert client.get('/health').get_json() == {"status": "ok", "sweeping_enabled": False}
    assert client.post('/admin/sweeps/run', headers=AUTH).status_code == 503
    assert not app.extensions['sweep_scheduler'].running


def test_api_leaves_periodic_sweeps_to_the_worker(session_factory, chain):
    settings = SweepSettings(rpc_url="http://node.test", treasury_address=TREASURY, encryption_key="k")
    app = create_app(settings, session_factory=session_factory, chain=chain, admin_token=TOKEN)
    scheduler = app.extensions['sweep_scheduler']

    assert scheduler.enabled
    assert not scheduler.running


def test_api_runs_scheduler_when_configured(session_factory, chain):
    settings = SweepSettings(rpc_url="http://node.test", treasury_address=TREASURY, encryption_key="k",
                             scheduler_in_api=True)
    app = create_app(settings, session_factory=session_factory, chain=chain, admin_token=TOKEN)
    scheduler = app.extensions['sweep_scheduler']
    try:
        assert scheduler.running
    finally:
        scheduler.stop(timeout=5)
    assert not scheduler.running


@patch.dict(os.environ, {"PORT": "8081"})
@patch("admin.app.create_app")
def test_main_listens_on_configured_port(mock_create_app):
    main()
    mock_create_app.return_value.run.assert_called_once_with(host='0.0.0.0', port=8081)
