"""
Health check for a running recovery service.

Queries the service's health and workspace-health endpoints and inspects
the local backup directory and system resources. Output formats suit
monitoring systems such as Nagios.
"""

import argparse
import json
import logging
import shutil
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

import psutil
import requests

NAGIOS_EXIT_CODES = {'ok': 0, 'warning': 1, 'error': 2}


class HealthChecker:
    """Health checker for the module recovery service."""

    def __init__(self, base_url: str = "http://localhost:8890", timeout: int = 30):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

    def _get(self, path: str) -> requests.Response:
        response = self.session.get(f"{self.base_url}{path}", timeout=self.timeout)
        response.raise_for_status()
        return response

    def check_api_health(self) -> Dict[str, Any]:
        """Check the service's /health endpoint."""
        try:
            response = self._get("/health")
            health_data = response.json()
            return {
                'status': 'ok',
                'response_time_ms': response.elapsed.total_seconds() * 1000,
                'api_version': health_data.get('version', 'unknown'),
                'api_status': health_data.get('status', 'unknown'),
            }
        except requests.exceptions.ConnectionError:
            return {'status': 'error', 'error': 'Connection refused - service may be down'}
        except requests.exceptions.Timeout:
            return {'status': 'error', 'error': f'Request timeout after {self.timeout}s'}
        except requests.exceptions.RequestException as e:
            return {'status': 'error', 'error': f'Health endpoint error: {e}'}

    def check_workspace_health(self, min_score: int = 50) -> Dict[str, Any]:
        """Check the aggregate module health reported by the service."""
        try:
            workspace = self._get("/recovery/workspace/health").json()
        except requests.exceptions.RequestException as e:
            return {'status': 'error', 'error': f'Workspace health endpoint error: {e}'}

        score = workspace.get('overall_health_score', 0)
        summary = workspace.get('module_summary') or {}
        warnings = []
        status = 'ok'
        if summary.get('total_modules', 0) and score < min_score:
            status = 'warning'
            warnings.append(f'Workspace health score {score} below {min_score}')
        critical = summary.get('critical_modules', 0) + summary.get('failed_modules', 0)
        if critical:
            status = 'warning'
            warnings.append(f'{critical} modules in critical or failed state')

        return {
            'status': status,
            'health_score': score,
            'health_status': workspace.get('health_status'),
            'total_modules': summary.get('total_modules', 0),
            'warnings': warnings or None,
        }

    def check_backup_directory(self, backup_root: Optional[Path]) -> Dict[str, Any]:
        """Check that the backup directory is writable and has free space."""
        if backup_root is None:
            return {'status': 'ok', 'backups_enabled': False}

        backup_root = Path(backup_root)
        if not backup_root.is_dir():
            return {'status': 'error', 'error': f'Backup directory does not exist: {backup_root}'}

        probe = backup_root / '.modrec_health_check'
        try:
            probe.write_text('health check')
            probe.unlink()
        except OSError as e:
            return {'status': 'error', 'error': f'Cannot write to backup directory: {e}'}

        total, _, free = shutil.disk_usage(backup_root)
        free_percent = (free / total) * 100
        status = 'ok'
        warnings = []
        if free_percent < 5:
            status = 'error'
            warnings.append('Critical: Less than 5% disk space remaining')
        elif free_percent < 15:
            status = 'warning'
            warnings.append('Warning: Less than 15% disk space remaining')

        return {
            'status': status,
            'backups_enabled': True,
            'backup_count': len(list(backup_root.glob('*.metadata.json'))),
            'disk_free_percent': round(free_percent, 2),
            'warnings': warnings or None,
            'error': warnings[0] if status == 'error' else None,
        }

    def check_system_resources(self) -> Dict[str, Any]:
        """Check CPU and memory usage."""
        cpu_percent = psutil.cpu_percent(interval=1)
        memory = psutil.virtual_memory()

        status = 'ok'
        warnings = []
        if cpu_percent > 90:
            status = 'warning'
            warnings.append(f'High CPU usage: {cpu_percent}%')
        if memory.percent > 90:
            status = 'error'
            warnings.append(f'Critical memory usage: {memory.percent}%')
        elif memory.percent > 80:
            status = 'warning'
            warnings.append(f'High memory usage: {memory.percent}%')

        return {
            'status': status,
            'cpu_percent': cpu_percent,
            'memory_percent': memory.percent,
            'memory_available_gb': round(memory.available / (1024**3), 2),
            'warnings': warnings or None,
            'error': warnings[-1] if status == 'error' else None,
        }

    def run_comprehensive_check(self, backup_root: Optional[Path] = None) -> Dict[str, Any]:
        """Run all health checks and return comprehensive status."""
        start_time = time.time()
        checks = {
            'api': self.check_api_health(),
            'workspace': self.check_workspace_health(),
            'backups': self.check_backup_directory(backup_root),
            'system': self.check_system_resources(),
        }

        overall_status = 'ok'
        errors = []
        warnings = []
        for check_name, check_result in checks.items():
            if check_result['status'] == 'error':
                overall_status = 'error'
                errors.append(f"{check_name}: {check_result.get('error') or 'Unknown error'}")
            elif check_result['status'] == 'warning':
                if overall_status != 'error':
                    overall_status = 'warning'
                warnings.extend(f"{check_name}: {w}" for w in check_result.get('warnings') or [])

        result = {
            'overall_status': overall_status,
            'check_duration_ms': round((time.time() - start_time) * 1000, 2),
            'timestamp': time.time(),
            'checks': checks,
        }
        if errors:
            result['errors'] = errors
        if warnings:
            result['warnings'] = warnings
        return result


def main(argv=None):
    parser = argparse.ArgumentParser(description='Module Recovery Orchestrator Health Check')
    parser.add_argument('--url', default='http://localhost:8890',
                        help='Base URL for the recovery service (default: http://localhost:8890)')
    parser.add_argument('--timeout', type=int, default=30,
                        help='Request timeout in seconds (default: 30)')
    parser.add_argument('--backup-root', type=Path,
                        help='Backup directory to inspect (default: none)')
    parser.add_argument('--format', choices=['json', 'text', 'nagios'], default='text',
                        help='Output format (default: text)')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format='%(levelname)s: %(message)s')
    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    checker = HealthChecker(args.url, args.timeout)
    result = checker.run_comprehensive_check(args.backup_root)

    if args.format == 'json':
        print(json.dumps(result, indent=2, default=str))
    elif args.format == 'nagios':
        message = f"Module Recovery Orchestrator {result['overall_status'].upper()}"
        if 'errors' in result:
            message += f" - Errors: {'; '.join(result['errors'])}"
        elif 'warnings' in result:
            message += f" - Warnings: {'; '.join(result['warnings'])}"
        print(message)
        sys.exit(NAGIOS_EXIT_CODES.get(result['overall_status'], 3))
    else:
        print("Module Recovery Orchestrator Health Check")
        print(f"Overall Status: {result['overall_status'].upper()}")
        print(f"Check Duration: {result['check_duration_ms']}ms")
        print()
        for check_name, check_result in result['checks'].items():
            print(f"{check_name.title()} Check: {check_result['status'].upper()}")
            if check_result['status'] == 'error' and check_result.get('error'):
                print(f"  Error: {check_result['error']}")
            for warning in check_result.get('warnings') or []:
                print(f"  Warning: {warning}")
            print()

    if result['overall_status'] != 'ok':
        sys.exit(1)


if __name__ == '__main__':
    main()
