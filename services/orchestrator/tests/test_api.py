from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import make_module
from recovery_api.config import get_settings
from recovery_api.main import app, run
from recovery_api.recovery.router import get_recovery_orchestrator


@pytest.fixture(autouse=True)
def configure_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    workspace = tmp_path / 'workspace'
    (workspace / 'packages').mkdir(parents=True)
    monkeypatch.setenv('MODREC_WORKSPACE_ROOT', str(workspace))
    monkeypatch.setenv('MODREC_RECOVERY_BACKUP_DIRECTORY', str(tmp_path / 'backups'))
    monkeypatch.setenv('MODREC_RECOVERY_RETRY_DELAY_SECONDS', '0')
    get_settings.cache_clear()
    get_recovery_orchestrator.cache_clear()
    yield
    get_settings.cache_clear()
    get_recovery_orchestrator.cache_clear()


def client() -> TestClient:
    return TestClient(app)


def test_health_endpoint():
    response = client().get('/health')
    assert response.status_code == 200
    payload = response.json()
    assert payload['status'] == 'ok'
    assert isinstance(payload.get('version'), str)
    assert 'timestamp' in payload


def test_detailed_health_reports_configuration():
    response = client().get('/health/detailed')
    assert response.status_code == 200
    payload = response.json()
    assert payload['environment']['packages_root_exists'] is True
    assert payload['environment']['backups_enabled'] is True
    assert payload['configuration']['max_concurrency'] == 4
    assert 'system' in payload


def test_module_listing():
    settings = get_settings()
    make_module(settings, 'widgets')
    make_module(settings, 'core')
    (settings.packages_root / 'notes').mkdir()

    response = client().get('/recovery/modules')
    assert response.status_code == 200
    assert response.json()['modules'] == ['core', 'widgets']


def test_module_health():
    make_module(get_settings(), 'widgets')

    response = client().get('/recovery/modules/widgets/health')
    assert response.status_code == 200
    payload = response.json()
    assert payload['module_id'] == 'widgets'
    assert payload['health_score'] == 100
    assert payload['status'] == 'healthy'


def test_invalid_module_id_is_rejected():
    api_client = client()
    assert api_client.get('/recovery/modules/Bad_Id/health').status_code == 400
    assert api_client.post('/recovery/modules/Bad_Id/recover', json={}).status_code == 400
    response = api_client.post('/recovery/modules/recover', json={'module_ids': ['core', 'Bad_Id']})
    assert response.status_code == 400


def test_empty_module_list_is_rejected():
    response = client().post('/recovery/modules/recover', json={'module_ids': []})
    assert response.status_code == 422


def test_dry_run_recovery_of_single_module():
    module_path = make_module(get_settings(), 'widgets', manifest=None, built=False)

    response = client().post('/recovery/modules/widgets/recover', json={'dry_run': True})
    assert response.status_code == 200
    payload = response.json()
    assert payload['module_id'] == 'widgets'
    assert payload['recovery_strategy'] == 'repair'
    assert payload['backup_created'] is False
    assert all(p['outputs'][0].startswith('DRY RUN') for p in payload['phase_results'])
    assert not (module_path / 'package.json').exists()


def test_multi_module_session_lifecycle():
    settings = get_settings()
    make_module(settings, 'widgets')
    make_module(settings, 'core')

    api_client = client()
    response = api_client.post(
        '/recovery/modules/recover',
        json={'module_ids': ['widgets', 'core'], 'dry_run': True, 'parallel_execution': True},
    )
    assert response.status_code == 200
    result = response.json()
    assert result['execution_order'] == ['core', 'widgets']
    assert result['execution_strategy'] == 'parallel'
    assert result['modules_successful'] == 2

    session_response = api_client.get(f"/recovery/sessions/{result['session_id']}")
    assert session_response.status_code == 200
    assert session_response.json()['status'] == 'completed'

    cancel_response = api_client.post(f"/recovery/sessions/{result['session_id']}/cancel")
    assert cancel_response.status_code == 200
    assert cancel_response.json()['cancelled'] is False


def test_unknown_session():
    api_client = client()
    assert api_client.get('/recovery/sessions/recovery-missing').status_code == 404
    assert api_client.post('/recovery/sessions/recovery-missing/cancel').status_code == 404


def test_workspace_health():
    settings = get_settings()
    make_module(settings, 'core')
    make_module(settings, 'widgets')

    response = client().get('/recovery/workspace/health')
    assert response.status_code == 200
    payload = response.json()
    assert payload['overall_health_score'] == 100
    assert payload['module_summary']['total_modules'] == 2
    assert payload['health_status'] == 'excellent'


def test_rollback_without_backup_reports_failure():
    make_module(get_settings(), 'widgets')

    response = client().post('/recovery/modules/widgets/rollback', json={'reason': 'manual'})
    assert response.status_code == 200
    payload = response.json()
    assert payload['rollback_status'] == 'failed'
    assert payload['errors']


def test_rollback_rejects_backup_outside_backup_directory():
    make_module(get_settings(), 'widgets')

    response = client().post(
        '/recovery/modules/widgets/rollback',
        json={'reason': 'manual', 'backup_id': '../../etc'},
    )
    assert response.status_code == 400


def test_run_serves_app_with_uvicorn(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv('MODREC_HOST', raising=False)
    monkeypatch.setenv('MODREC_PORT', '9100')

    with patch('recovery_api.main.uvicorn.run') as run_server:
        run()

    run_server.assert_called_once_with(app, host='127.0.0.1', port=9100, workers=1)
