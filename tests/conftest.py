"""
Shared fixtures: a fake command runner that records every external call.
"""

import gzip
import sys
from pathlib import Path

import pytest

# Add the src directory to the path so we can import the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mysql_slave_resync.slave_resync import (  # noqa: E402
    CommandResult,
    ResyncConfig,
    STATUS_MARKER,
)

MASTER_STATUS = ['mysql-bin.000001\t154\t\t\t']

DF_OUTPUT = (
    "Filesystem     1024-blocks     Used Available Capacity Mounted on\n"
    "/dev/sda1        102400000 40960000  61440000      40% /\n"
)

SLAVE_STATUS = """*************************** 1. row ***************************
               Slave_IO_State: Waiting for master to send event
                  Master_Host: db-master.example.com
              Master_Log_File: mysql-bin.000001
          Read_Master_Log_Pos: 154
             Slave_IO_Running: Yes
            Slave_SQL_Running: Yes
      Slave_SQL_Running_State: Slave has read all relay log; waiting for more updates
"""


class RecordingStdin:
    """Stand-in for a session's stdin pipe"""

    def __init__(self):
        self.writes = []
        self.closed = False

    def write(self, text):
        if self.closed:
            raise ValueError("I/O operation on closed file")
        self.writes.append(text)

    def flush(self):
        pass

    def close(self):
        self.closed = True

    @property
    def text(self):
        return ''.join(self.writes)


class FakeStdout:
    def __init__(self, lines):
        self.lines = list(lines)

    def readline(self):
        return self.lines.pop(0) if self.lines else ''

    def read(self):
        rest = ''.join(self.lines)
        self.lines = []
        return rest


class FakeSession:
    """Stand-in for the long-lived master client process"""

    def __init__(self, status_lines, reaches_marker=True, returncode=0):
        lines = [line + '\n' for line in status_lines]
        if reaches_marker:
            lines.append(STATUS_MARKER + '\n')
        self.stdin = RecordingStdin()
        self.stdout = FakeStdout(lines)
        self.returncode = None
        self._exit_status = returncode

    def wait(self):
        self.returncode = self._exit_status
        return self.returncode

    def poll(self):
        return self.returncode


class FakeRunner:
    """Records commands instead of running them

    Any command whose arguments or stdin contain one of `failures` exits 1.
    """

    def __init__(self, status_lines=None, failures=(), slave_status=SLAVE_STATUS,
                 lock_fails=False, unlock_returncode=0, tools_available=True):
        self.status_lines = MASTER_STATUS if status_lines is None else status_lines
        self.failures = list(failures)
        self.slave_status = slave_status
        self.lock_fails = lock_fails
        self.unlock_returncode = unlock_returncode
        self.tools_available = tools_available
        self.calls = []
        self.sessions = []

    def _fails(self, text):
        return any(pattern in text for pattern in self.failures)

    def run(self, args, input_text=None):
        self.calls.append(('run', list(args), input_text))
        text = ' '.join(args) + '\n' + (input_text or '')
        if self._fails(text):
            return CommandResult(1, 'ERROR simulated failure')
        if 'df -Pk' in args[-1]:
            return CommandResult(0, DF_OUTPUT)
        if input_text and 'SHOW SLAVE STATUS' in input_text:
            return CommandResult(0, self.slave_status)
        return CommandResult(0, '')

    def run_to_gzip(self, args, output_file):
        self.calls.append(('gzip', list(args), None))
        if self._fails(' '.join(args)):
            return CommandResult(2, 'mysqldump: Got error: 1044: Access denied')
        with gzip.open(output_file, 'wb') as f:
            f.write(b'-- MySQL dump\nCREATE TABLE t (id int);\n')
        return CommandResult(0, '')

    def open_session(self, args):
        self.calls.append(('session', list(args), None))
        if self.lock_fails:
            session = FakeSession(['ERROR 1227 (42000) at line 1: Access denied'],
                                  reaches_marker=False, returncode=1)
        else:
            session = FakeSession(self.status_lines, returncode=self.unlock_returncode)
        self.sessions.append(session)
        return session

    def check_tools(self, tools):
        self.calls.append(('check_tools', list(tools), None))
        return self.tools_available

    def texts(self):
        """Every command's arguments and stdin as one string each"""
        return [
            ' '.join(args) + '\n' + (input_text or '')
            for kind, args, input_text in self.calls
            if kind != 'check_tools'
        ]


@pytest.fixture
def config(tmp_path):
    return ResyncConfig(
        slave_host='db-slave.example.com',
        slave_user='deploy',
        slave_password='s3cret',
        local_tmp_dir=str(tmp_path / 'scratch'),
        remote_tmp_dir='/tmp',
    )
