"""
Shared pytest fixtures for nmp-backup tests.

This module provides fixtures for:
- Flask app and CLI runner
- Fake component adapters and an orchestrator over a temp backup root
- Temporary config trees
- Shell script stand-ins for pg_dump and influx
- Mock fixtures for APScheduler
"""

import os
import threading
from unittest.mock import MagicMock, patch

import pytest

from nmp_backup import create_app
from nmp_backup.backup.components import ComponentAdapter, ComponentRegistry
from nmp_backup.backup.orchestrator import BackupOrchestrator


class FakeAdapter(ComponentAdapter):
    """
    Adapter that writes a marker file instead of calling external tools.

    Args:
        name: Component name
        mandatory: Mandatory components abort the backup on failure
        fail: Exception raised by backup() and restore()
        produces_data: backup() return value
        block: Event the backup waits on (with `started` set first)
    """

    def __init__(self, name, mandatory=False, fail=None, produces_data=True, block=None):
        self.name = name
        self.mandatory = mandatory
        self.fail = fail
        self.produces_data = produces_data
        self.block = block
        self.started = threading.Event()
        self.backup_calls = 0
        self.restored_from = []

    def backup(self, dest_dir, context):
        self.backup_calls += 1
        self.started.set()
        if self.block is not None:
            self.block.wait(10)
        if self.fail is not None:
            raise self.fail
        if not self.produces_data:
            return False
        with open(os.path.join(dest_dir, f'{self.name}.dat'), 'w') as f:
            f.write(f'{self.name} data')
        return True

    def restore(self, source_dir, context):
        if self.fail is not None:
            raise self.fail
        marker = os.path.join(source_dir, f'{self.name}.dat')
        if not os.path.exists(marker):
            return False
        with open(marker) as f:
            self.restored_from.append(f.read())
        return True


@pytest.fixture
def make_adapter():
    """Factory for FakeAdapter instances."""
    return FakeAdapter


@pytest.fixture
def make_tool(tmp_path):
    """
    Factory for executable shell scripts standing in for external tools.

    Usage: make_tool('pg_dump', 'exit 1') -> path
    """
    if os.name != 'posix':
        pytest.skip('shell script tools need a POSIX system')

    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir(exist_ok=True)

    def _make_tool(name, body):
        path = bin_dir / name
        path.write_text(f'#!/bin/sh\n{body}\n')
        path.chmod(0o755)
        return str(path)

    return _make_tool


@pytest.fixture
def backup_root(tmp_path):
    """Empty backup root directory."""
    root = tmp_path / 'backups'
    root.mkdir()
    return root


@pytest.fixture
def fake_registry():
    """Registry with a mandatory postgres and best-effort influxdb/config/plugins."""
    return ComponentRegistry([
        FakeAdapter('postgres', mandatory=True),
        FakeAdapter('influxdb'),
        FakeAdapter('config'),
        FakeAdapter('plugins'),
    ])


@pytest.fixture
def orchestrator(backup_root, fake_registry):
    """Orchestrator over the temp backup root with fake adapters."""
    return BackupOrchestrator(str(backup_root), fake_registry)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Backups go to a temp directory; influx points to a missing binary so the
    best-effort InfluxDB component is always skipped.
    """
    config_dir = tmp_path / 'etc'
    config_dir.mkdir()
    (config_dir / 'nmp.yaml').write_text('listen: 0.0.0.0:8080\n')

    app = create_app('testing', config_overrides={
        'BACKUP_DIR': str(tmp_path / 'backups'),
        'CONFIG_DIR': str(config_dir),
        'PLUGINS_DIR': None,
        'DATABASE_URL': None,
        'INFLUX_BIN': str(tmp_path / 'missing' / 'influx'),
        'RETENTION_DAYS': 30,
        'MAX_BACKUPS': None,
        'LOG_DIR': None,
    })

    yield app

    app.extensions['nmp_backup']['scheduler'].stop()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (should be excluded in tests)
    """
    source = tmp_path / 'source'
    source.mkdir()

    # Create files
    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    # Create nested directory
    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    # Create file that should be excluded
    (source / 'test_file.pyc').write_bytes(b'compiled python')

    return source


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('nmp_backup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = True
        scheduler_instance.get_jobs.return_value = []

        yield mock_sched
