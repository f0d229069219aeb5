"""
Tests for the command-line entry point.
"""

import json
import os
from unittest.mock import patch

import pytest

from mysql_slave_resync.slave_resync import ENV_PREFIX, main

MODULE = 'mysql_slave_resync.slave_resync'
CONNECTION = ['--slave-host', 'db-slave.example.com', '--slave-user', 'deploy',
              '--slave-password', 's3cret']


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name)


@pytest.fixture
def no_commands():
    with patch(f'{MODULE}.subprocess.Popen') as mock_popen, \
            patch(f'{MODULE}.subprocess.run') as mock_run:
        yield mock_popen, mock_run
        mock_popen.assert_not_called()
        mock_run.assert_not_called()


def test_no_databases_is_usage_error(no_commands, capsys, caplog):
    assert main(CONNECTION) == 1
    assert 'usage:' in capsys.readouterr().out
    assert "At least one database name is required" in caplog.text


@pytest.mark.parametrize('drop', [
    ['--slave-host'],
    ['--slave-user'],
    ['--slave-password'],
    ['--slave-host', '--slave-user', '--slave-password'],
])
def test_missing_connection_setting_is_config_error(no_commands, caplog, drop):
    argv = []
    for option, value in zip(CONNECTION[::2], CONNECTION[1::2]):
        if option not in drop:
            argv.extend([option, value])

    assert main(argv + ['orders']) == 1
    for option in drop:
        assert option[2:].replace('-', '_') in caplog.text


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv('MYSQL_RESYNC_SLAVE_HOST', 'db-slave.example.com')
    monkeypatch.setenv('MYSQL_RESYNC_SLAVE_USER', 'deploy')
    monkeypatch.setenv('MYSQL_RESYNC_SLAVE_PASSWORD', 's3cret')

    with patch(f'{MODULE}.SlaveResyncTool') as mock_tool:
        mock_tool.return_value.resync.return_value = True
        assert main(['--local-tmp-dir', str(tmp_path), 'orders', 'inventory']) == 0

    config = mock_tool.call_args[0][0]
    assert config.slave_host == 'db-slave.example.com'
    assert config.local_tmp_dir == str(tmp_path)
    mock_tool.return_value.resync.assert_called_once_with(['orders', 'inventory'])


def test_config_file(tmp_path):
    path = tmp_path / 'resync.json'
    path.write_text(json.dumps({
        'slave_host': 'db-slave.example.com',
        'slave_user': 'deploy',
        'slave_password': 's3cret',
        'ssh_port': 2222,
    }))

    with patch(f'{MODULE}.SlaveResyncTool') as mock_tool:
        mock_tool.return_value.resync.return_value = False
        assert main(['--config', str(path), 'orders']) == 1

    assert mock_tool.call_args[0][0].ssh_port == 2222


def test_invalid_config_file(no_commands, tmp_path, caplog):
    path = tmp_path / 'resync.json'
    path.write_text('{broken')

    assert main(['--config', str(path), 'orders']) == 1
    assert "Invalid JSON in config file" in caplog.text


def test_numeric_password_in_config_file(tmp_path):
    path = tmp_path / 'resync.json'
    path.write_text(json.dumps({
        'slave_host': 'db-slave.example.com',
        'slave_user': 'deploy',
        'slave_password': 12345,
    }))

    with patch(f'{MODULE}.SlaveResyncTool') as mock_tool:
        mock_tool.return_value.resync.return_value = True
        assert main(['--config', str(path), 'orders']) == 0

    assert mock_tool.call_args[0][0].slave_password == '12345'


@pytest.mark.parametrize('settings', [
    {'dump_options': 5},
    {'slave_password': ['s3cret']},
    {'slave_host': '  '},
])
def test_bad_setting_types_in_config_file(no_commands, tmp_path, caplog, settings):
    path = tmp_path / 'resync.json'
    path.write_text(json.dumps(dict({
        'slave_host': 'db-slave.example.com',
        'slave_user': 'deploy',
        'slave_password': 's3cret',
    }, **settings)))

    assert main(['--config', str(path), 'orders']) == 1
    assert list(settings)[0] in caplog.text
    assert "Unexpected error" not in caplog.text


def test_invalid_database_name(no_commands, caplog):
    assert main(CONNECTION + ['../orders']) == 1
    assert "Invalid database name" in caplog.text


def test_keyboard_interrupt():
    with patch(f'{MODULE}.SlaveResyncTool') as mock_tool:
        mock_tool.return_value.resync.side_effect = KeyboardInterrupt
        assert main(CONNECTION + ['orders']) == 1


def test_sample_config(no_commands, capsys):
    assert main(['--sample-config']) == 0
    sample = json.loads(capsys.readouterr().out)
    assert set(sample) >= {'slave_host', 'slave_user', 'slave_password'}
