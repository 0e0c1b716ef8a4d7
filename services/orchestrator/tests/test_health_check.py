from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from recovery_api.health_check import NAGIOS_EXIT_CODES, HealthChecker, main


def response(payload: dict) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = payload
    resp.elapsed = timedelta(milliseconds=12)
    resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def checker() -> HealthChecker:
    checker = HealthChecker('http://recovery.local/', timeout=5)
    checker.session = MagicMock()
    return checker


def test_api_health_ok(checker: HealthChecker):
    checker.session.get.return_value = response({'status': 'ok', 'version': '0.1.0'})

    result = checker.check_api_health()

    assert result['status'] == 'ok'
    assert result['api_version'] == '0.1.0'
    assert result['response_time_ms'] == pytest.approx(12.0)
    checker.session.get.assert_called_once_with('http://recovery.local/health', timeout=5)


def test_api_health_connection_refused(checker: HealthChecker):
    checker.session.get.side_effect = requests.exceptions.ConnectionError()

    result = checker.check_api_health()

    assert result['status'] == 'error'
    assert 'Connection refused' in result['error']


def test_api_health_timeout(checker: HealthChecker):
    checker.session.get.side_effect = requests.exceptions.Timeout()

    assert checker.check_api_health()['error'] == 'Request timeout after 5s'


def test_workspace_health_warns_on_low_score(checker: HealthChecker):
    checker.session.get.return_value = response({
        'overall_health_score': 35,
        'health_status': 'poor',
        'module_summary': {'total_modules': 4, 'critical_modules': 1, 'failed_modules': 1},
    })

    result = checker.check_workspace_health(min_score=50)

    assert result['status'] == 'warning'
    assert len(result['warnings']) == 2
    assert result['total_modules'] == 4


def test_workspace_health_ok(checker: HealthChecker):
    checker.session.get.return_value = response({
        'overall_health_score': 96,
        'health_status': 'excellent',
        'module_summary': {'total_modules': 3, 'critical_modules': 0, 'failed_modules': 0},
    })

    result = checker.check_workspace_health()

    assert result['status'] == 'ok'
    assert result['warnings'] is None


def test_backup_directory_checks(checker: HealthChecker, tmp_path: Path):
    assert checker.check_backup_directory(None) == {'status': 'ok', 'backups_enabled': False}
    assert checker.check_backup_directory(tmp_path / 'missing')['status'] == 'error'

    (tmp_path / 'widgets-backup-1.metadata.json').write_text('{}')
    with patch('recovery_api.health_check.shutil.disk_usage', return_value=(100, 90, 10)):
        result = checker.check_backup_directory(tmp_path)

    assert result['status'] == 'warning'
    assert result['backup_count'] == 1
    assert not (tmp_path / '.modrec_health_check').exists()


def test_system_resources(checker: HealthChecker):
    memory = MagicMock(percent=95.0, available=2 * 1024**3)
    with patch('recovery_api.health_check.psutil.cpu_percent', return_value=20.0), \
            patch('recovery_api.health_check.psutil.virtual_memory', return_value=memory):
        result = checker.check_system_resources()

    assert result['status'] == 'error'
    assert result['error'] == 'Critical memory usage: 95.0%'


def test_nagios_output_exit_code(capsys):
    report = {'overall_status': 'warning', 'warnings': ['workspace: low score'], 'checks': {}}
    with patch.object(HealthChecker, 'run_comprehensive_check', return_value=report):
        with pytest.raises(SystemExit) as exc_info:
            main(['--format', 'nagios'])

    assert exc_info.value.code == NAGIOS_EXIT_CODES['warning']
    assert 'Warnings: workspace: low score' in capsys.readouterr().out
