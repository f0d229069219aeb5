#!/usr/bin/env python3
"""
MySQL Slave Resync Tool
Resynchronize MySQL replication slave databases with their master
Runs on the master host and uses system commands (mysql, mysqldump, ssh, scp)
"""

import argparse
import getpass
import gzip
import json
import logging
import os
import posixpath
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, NamedTuple, Iterable, Mapping

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Client warning printed whenever a password is given on the command line
PASSWORD_WARNING = 'Using a password'
STATUS_MARKER = 'mysql-slave-resync:end-of-status'
ENV_PREFIX = 'MYSQL_RESYNC_'

LOG_FILE_PATTERN = re.compile(r'^[A-Za-z0-9_.\-]+$')
PASSWORD_OPTION = re.compile(r"--password=(?:'[^']*'|\"[^\"]*\"|\S)+")


class ResyncError(RuntimeError):
    """Base class for resync failures"""


class ConfigError(ResyncError):
    """Missing or invalid configuration, raised before any command runs"""


class StepError(ResyncError):
    """A pipeline step exited with a failure status"""

    def __init__(self, step: str, returncode: Optional[int] = None, output: str = ''):
        self.step = step
        self.returncode = returncode
        self.output = output
        message = f"{step} failed"
        if returncode is not None:
            message += f" (exit status {returncode})"
        super().__init__(message)


class ResyncState(Enum):
    """Per-database pipeline state, in execution order"""
    NOT_STARTED = 'not started'
    DISK_CHECKED_MASTER = 'disk checked on master'
    MASTER_LOCKED = 'master locked'
    DUMPED = 'dumped'
    MASTER_UNLOCKED = 'master unlocked'
    DISK_CHECKED_SLAVE = 'disk checked on slave'
    TRANSFERRED = 'transferred'
    SLAVE_STOPPED = 'slave stopped'
    PACKET_SIZE_RAISED = 'packet size raised'
    RESTORED = 'restored'
    REPOSITIONED = 'repositioned'
    SLAVE_STARTED = 'slave started'
    STATUS_CHECKED = 'status checked'
    CLEANED_UP = 'cleaned up'
    FAILED = 'failed'


# Transcript label of the step that moves a database into each state
STEP_LABELS = {
    ResyncState.DISK_CHECKED_MASTER: 'checking disk space on master server',
    ResyncState.MASTER_LOCKED: 'resetting and read-locking master db',
    ResyncState.DUMPED: 'dumping master db',
    ResyncState.MASTER_UNLOCKED: 'unlocking master db',
    ResyncState.DISK_CHECKED_SLAVE: 'checking disk space on slave server',
    ResyncState.TRANSFERRED: 'copying dump to slave server',
    ResyncState.SLAVE_STOPPED: 'stopping slave db',
    ResyncState.PACKET_SIZE_RAISED: 'increasing max allowed packets on slave db',
    ResyncState.RESTORED: 'restoring dump to slave db',
    ResyncState.REPOSITIONED: 'resetting slave db to master log file and position',
    ResyncState.SLAVE_STARTED: 'starting slave db',
    ResyncState.STATUS_CHECKED: 'checking db status',
    ResyncState.CLEANED_UP: 'cleaning up temporary files on slave server',
}


class ResyncConfig:
    """Settings for one resync run

    Built once at startup from defaults, a JSON config file, MYSQL_RESYNC_*
    environment variables and command-line options, then handed to
    SlaveResyncTool.
    """

    FIELDS = (
        'slave_host', 'slave_user', 'slave_password', 'slave_db_user',
        'ssh_port', 'ssh_key', 'login_path', 'local_tmp_dir', 'remote_tmp_dir',
        'net_buffer_length', 'max_allowed_packet', 'dump_options',
    )
    REQUIRED = ('slave_host', 'slave_user', 'slave_password')
    INTEGERS = ('ssh_port', 'net_buffer_length', 'max_allowed_packet')

    def __init__(self, slave_host: str = '', slave_user: str = '',
                 slave_password: str = '', slave_db_user: str = 'root',
                 ssh_port: int = 22, ssh_key: Optional[str] = None,
                 login_path: str = 'local',
                 local_tmp_dir: str = '/tmp/mysql-slave-resync',
                 remote_tmp_dir: str = '/tmp',
                 net_buffer_length: int = 1000000,
                 max_allowed_packet: int = 1000000000,
                 dump_options: Optional[List[str]] = None):
        self.slave_host = slave_host
        self.slave_user = slave_user
        self.slave_password = slave_password
        self.slave_db_user = slave_db_user
        self.ssh_port = ssh_port
        self.ssh_key = ssh_key
        self.login_path = login_path
        self.local_tmp_dir = local_tmp_dir
        self.remote_tmp_dir = remote_tmp_dir
        self.net_buffer_length = net_buffer_length
        self.max_allowed_packet = max_allowed_packet
        if dump_options is None:
            dump_options = ['--routines', '--triggers', '--events']
        self.dump_options = dump_options

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ResyncConfig':
        """Build a config from a mapping, skipping unknown keys"""
        settings = {}
        for name, value in data.items():
            if name not in cls.FIELDS:
                logger.warning(f"Ignoring unknown config setting: {name}")
                continue
            settings[name] = _coerce_setting(name, value)
        return cls(**settings)

    def validate(self):
        """Raise ConfigError unless the config is usable"""
        missing = [name for name in self.REQUIRED if not str(getattr(self, name)).strip()]
        if missing:
            raise ConfigError(
                f"Please set {', '.join(missing)} (config file, "
                f"{ENV_PREFIX}* environment variables or command-line options) before run"
            )
        for name in self.INTEGERS:
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        for name in ('login_path', 'local_tmp_dir', 'remote_tmp_dir', 'slave_db_user'):
            if not getattr(self, name):
                raise ConfigError(f"{name} must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.FIELDS}

    def masked(self) -> Dict[str, Any]:
        """Settings safe for logging"""
        settings = self.to_dict()
        if settings['slave_password']:
            settings['slave_password'] = '***'
        return settings


def _coerce_setting(name: str, value: Any) -> Any:
    """Convert a raw setting (JSON, environment or CLI) to its config type"""
    if value is None:
        return None if name == 'ssh_key' else ''
    if name in ResyncConfig.INTEGERS:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {value!r}")
    if name == 'dump_options':
        if isinstance(value, str):
            return shlex.split(value)
        if not isinstance(value, (list, tuple)):
            raise ConfigError(f"{name} must be a list or a string, got {value!r}")
        return [str(option) for option in value]
    if isinstance(value, (bool, list, dict)):
        raise ConfigError(f"{name} must be a string, got {value!r}")
    return str(value)


def settings_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect MYSQL_RESYNC_<SETTING> variables that are set and non-empty"""
    if environ is None:
        environ = os.environ
    settings = {}
    for name in ResyncConfig.FIELDS:
        value = environ.get(ENV_PREFIX + name.upper())
        if value:
            settings[name] = value
    return settings


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from JSON file"""
    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}")
    except json.JSONDecodeError as err:
        raise ConfigError(f"Invalid JSON in config file: {err}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a JSON object: {config_path}")
    return data


def create_sample_config():
    """Print sample configuration"""
    sample = ResyncConfig(
        slave_host='db-slave.example.com',
        slave_user='ssh_user',
        slave_password='slave_root_password',
        ssh_key='~/.ssh/id_rsa',
    ).to_dict()
    print(json.dumps(sample, indent=2))


class CommandResult(NamedTuple):
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def filter_output(text: str) -> str:
    """Drop the client's password-on-command-line warning from captured output"""
    return '\n'.join(
        line for line in text.splitlines() if PASSWORD_WARNING not in line
    )


def describe_command(args: Iterable[str]) -> str:
    """Render a command line for logging, with passwords masked"""
    return ' '.join(PASSWORD_OPTION.sub('--password=***', arg) for arg in args)


class CommandRunner:
    """Run external programs and capture their output

    No timeouts are applied; every call blocks until the program exits.
    """

    def run(self, args: List[str], input_text: Optional[str] = None) -> CommandResult:
        """Run to completion with stdout and stderr merged into one captured stream"""
        logger.debug(f"Executing command: {describe_command(args)}")
        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT
            )
        except FileNotFoundError:
            raise ResyncError(f"{args[0]} command not found")

        stdout, _ = process.communicate(
            input=input_text.encode() if input_text is not None else None
        )
        output = filter_output(stdout.decode('utf-8', errors='ignore'))
        if output:
            logger.debug(output)
        return CommandResult(process.returncode, output)

    def run_to_gzip(self, args: List[str], output_file: str) -> CommandResult:
        """Run to completion, compressing stdout into output_file"""
        logger.debug(f"Executing command: {describe_command(args)} > {output_file}")
        with tempfile.TemporaryFile() as errors:
            try:
                process = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=errors
                )
            except FileNotFoundError:
                raise ResyncError(f"{args[0]} command not found")

            try:
                with process.stdout, gzip.open(output_file, 'wb') as f:
                    shutil.copyfileobj(process.stdout, f)
            except OSError as err:
                process.kill()
                process.wait()
                raise ResyncError(f"Could not write {output_file}: {err}")
            returncode = process.wait()

            errors.seek(0)
            output = filter_output(errors.read().decode('utf-8', errors='ignore'))
        if output:
            logger.debug(output)
        return CommandResult(returncode, output)

    def open_session(self, args: List[str]) -> subprocess.Popen:
        """Start a long-lived client with piped stdin and merged, line-buffered output"""
        logger.debug(f"Opening session: {describe_command(args)}")
        try:
            return subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                bufsize=1
            )
        except FileNotFoundError:
            raise ResyncError(f"{args[0]} command not found")

    def check_tools(self, tools: Iterable[str]) -> bool:
        """Check that the required client programs are installed"""
        missing = []

        for tool in tools:
            try:
                subprocess.run([tool, '--version'], capture_output=True, timeout=5)
            except (FileNotFoundError, subprocess.TimeoutExpired):
                missing.append(tool)

        if missing:
            logger.error(f"Missing required tools: {', '.join(missing)}")
            logger.error("Please install MySQL client tools and OpenSSH client")
            return False

        return True


class Checkpoint(NamedTuple):
    """Master binary log coordinates of a consistent snapshot"""
    log_file: str
    log_pos: int

    def change_master_sql(self) -> str:
        return (
            f"CHANGE MASTER TO MASTER_LOG_FILE='{self.log_file}', "
            f"MASTER_LOG_POS={self.log_pos};"
        )


def parse_master_status(lines: Iterable[str]) -> Checkpoint:
    """Parse batch-mode SHOW MASTER STATUS output (tab separated, no header)

    The last row is used; its first two fields are File and Position.
    """
    rows = [line for line in lines if line.strip()]
    if not rows:
        raise ResyncError(
            "SHOW MASTER STATUS returned no rows; is binary logging enabled on the master?"
        )

    fields = rows[-1].split('\t')
    if len(fields) < 2:
        raise ResyncError(f"Unexpected master status row: {rows[-1]!r}")

    log_file, log_pos = fields[0].strip(), fields[1].strip()
    if not LOG_FILE_PATTERN.match(log_file):
        raise ResyncError(f"Unexpected master log file name: {log_file!r}")
    if not log_pos.isdigit():
        raise ResyncError(f"Unexpected master log position: {log_pos!r}")

    return Checkpoint(log_file, int(log_pos))


def parse_vertical_output(text: str) -> Dict[str, str]:
    """Parse \\G output ("Key: value" lines) into a dict"""
    fields = {}
    for line in text.splitlines():
        # Row separators look like "*************************** 1. row ***"
        if line.lstrip().startswith('*'):
            continue
        key, sep, value = line.partition(':')
        if sep and key.strip():
            fields[key.strip()] = value.strip()
    return fields


def running_state(status: Mapping[str, str]) -> Dict[str, str]:
    """Replication thread fields (Slave_IO_Running, Slave_SQL_Running, ...)"""
    return {key: value for key, value in status.items() if key.endswith('_Running')}


def parse_df_available(text: str) -> int:
    """Bytes available from POSIX `df -Pk` output"""
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        raise ValueError(f"Unexpected df output: {text!r}")

    # Filesystem 1024-blocks Used Available Capacity Mounted-on
    fields = lines[-1].split()
    if len(fields) < 6:
        raise ValueError(f"Unexpected df row: {lines[-1]!r}")
    return int(fields[3]) * 1024


def format_size(num_bytes: int) -> str:
    """Human-readable size in the style of `df -h`"""
    size = float(num_bytes)
    for unit in ('B', 'K', 'M', 'G', 'T'):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == 'B' else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}P"


def local_disk_available(path: str) -> Optional[int]:
    """Bytes available on the filesystem holding path, None if it cannot be read"""
    try:
        return shutil.disk_usage(path).free
    except OSError as err:
        logger.debug(f"Could not read disk usage of {path}: {err}")
        return None


class RemoteShell:
    """Run commands on, and copy files to, the slave host over ssh"""

    def __init__(self, runner: CommandRunner, host: str, user: Optional[str] = None,
                 port: int = 22, key: Optional[str] = None):
        self.runner = runner
        self.host = host
        self.user = user  # Can be empty to use SSH config
        self.port = port or 22  # Default to standard SSH port
        self.key = key and Path(key).expanduser()  # Expand ~ in path

    @property
    def remote_spec(self) -> str:
        # Format user@host or just host if user is not specified (uses SSH config)
        return f"{self.user}@{self.host}" if self.user else self.host

    def _options(self, port_flag: str) -> List[str]:
        options = [port_flag, str(self.port), '-o', 'BatchMode=yes']
        if self.key:
            if not self.key.exists():
                logger.warning(f"SSH key not found: {self.key}")
            else:
                options.extend(['-i', str(self.key)])
        return options

    def ssh_command(self, command: str) -> List[str]:
        return ['ssh', *self._options('-p'), self.remote_spec, command]

    def execute(self, command: str, input_text: Optional[str] = None) -> CommandResult:
        """Run a shell command on the remote host"""
        return self.runner.run(self.ssh_command(command), input_text=input_text)

    def copy_to(self, local_path: str, remote_dir: str) -> CommandResult:
        """Push one local file into remote_dir"""
        destination = f"{self.remote_spec}:{remote_dir.rstrip('/') or '/'}/"
        return self.runner.run(['scp', '-q', *self._options('-P'), local_path, destination])

    def disk_available(self, path: str) -> Optional[int]:
        """Bytes available on the remote filesystem holding path, None if unknown"""
        result = self.execute(f"df -Pk {shlex.quote(path)}")
        if not result.ok:
            logger.debug(f"Remote df failed with exit status {result.returncode}")
            return None
        try:
            return parse_df_available(result.output)
        except ValueError as err:
            logger.debug(str(err))
            return None

    def remove(self, path: str) -> CommandResult:
        return self.execute(f"rm -f {shlex.quote(path)}")


class MasterReadLock:
    """Global read lock on the master, held for the life of one client session

    RESET MASTER, FLUSH TABLES WITH READ LOCK and SHOW MASTER STATUS go through
    the same session, so the lock is already held when the checkpoint is read.
    The session stays open until release() or the end of the with block, which
    releases the lock on every exit path.
    """

    LOCK_STATEMENTS = (
        "RESET MASTER;\n"
        "FLUSH TABLES WITH READ LOCK;\n"
        "SHOW MASTER STATUS;\n"
        f"SELECT '{STATUS_MARKER}';\n"
    )
    UNLOCK_STATEMENTS = "UNLOCK TABLES;\n"

    def __init__(self, runner: CommandRunner, args: List[str]):
        self.runner = runner
        self.args = args
        self.session = None
        self.checkpoint = None
        self.status_lines = []

    @property
    def held(self) -> bool:
        return self.session is not None

    def acquire(self) -> Checkpoint:
        self.session = self.runner.open_session(self.args)
        try:
            self.session.stdin.write(self.LOCK_STATEMENTS)
            self.session.stdin.flush()
        except BrokenPipeError:
            logger.debug("Master session exited before the lock statements were sent")

        lines = []
        for line in iter(self.session.stdout.readline, ''):
            line = line.rstrip('\n')
            if line == STATUS_MARKER:
                break
            if PASSWORD_WARNING not in line:
                lines.append(line)
        else:
            # Session ended before reaching the marker: a statement failed
            session, self.session = self.session, None
            _close_stdin(session)
            returncode = session.wait()
            raise StepError(
                STEP_LABELS[ResyncState.MASTER_LOCKED], returncode, '\n'.join(lines)
            )

        self.status_lines = lines
        self.checkpoint = parse_master_status(lines)
        return self.checkpoint

    def release(self):
        """Unlock tables and close the session"""
        if self.session is None:
            return
        session, self.session = self.session, None

        try:
            session.stdin.write(self.UNLOCK_STATEMENTS)
            session.stdin.flush()
        except BrokenPipeError:
            logger.debug("Master session already closed")
        _close_stdin(session)

        output = filter_output(session.stdout.read())
        returncode = session.wait()
        if returncode != 0:
            raise StepError(STEP_LABELS[ResyncState.MASTER_UNLOCKED], returncode, output)

    def _release_after_error(self):
        try:
            self.release()
        except ResyncError as err:
            logger.error(f"Could not release master read lock: {err}")

    def __enter__(self) -> 'MasterReadLock':
        try:
            self.acquire()
        except BaseException:
            self._release_after_error()
            raise
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.release()
        else:
            self._release_after_error()
        return False


def _close_stdin(session):
    try:
        session.stdin.close()
    except BrokenPipeError:
        logger.debug("Session stdin already closed by the client")


class MasterDatabase:
    """Local master database, reached with a client login path"""

    def __init__(self, runner: CommandRunner, database: str,
                 login_path: str = 'local', dump_options: Optional[List[str]] = None):
        self.runner = runner
        self.database = database
        self.login_path = login_path
        self.dump_options = list(dump_options or [])

    def client_command(self, *options: str) -> List[str]:
        # --login-path must be the first option
        return ['mysql', f'--login-path={self.login_path}', *options, self.database]

    def read_lock(self) -> MasterReadLock:
        return MasterReadLock(
            self.runner,
            self.client_command('--batch', '--skip-column-names', '--unbuffered')
        )

    def dump(self, output_file: str) -> CommandResult:
        """Dump the whole database into a gzip file"""
        mysqldump_cmd = [
            'mysqldump',
            f'--login-path={self.login_path}',
            *self.dump_options,
            self.database
        ]
        result = self.runner.run_to_gzip(mysqldump_cmd, output_file)
        if result.ok and os.path.exists(output_file):
            file_size = os.path.getsize(output_file)
            logger.debug(f"Database dump completed. File size: {file_size:,} bytes")
        return result


class SlaveDatabase:
    """Slave database, reached over ssh with an administrative user"""

    def __init__(self, shell: RemoteShell, database: str, user: str, password: str):
        self.shell = shell
        self.database = database
        self.user = user
        self.password = password

    def client_command(self) -> str:
        return ' '.join([
            'mysql',
            f'--user={shlex.quote(self.user)}',
            f'--password={shlex.quote(self.password)}',
            shlex.quote(self.database),
        ])

    def execute_sql(self, sql: str) -> CommandResult:
        return self.shell.execute(self.client_command(), input_text=sql)

    def stop_replication(self) -> CommandResult:
        return self.execute_sql("STOP SLAVE;\n")

    def raise_packet_limits(self, net_buffer_length: int, max_allowed_packet: int) -> CommandResult:
        return self.execute_sql(
            f"SET GLOBAL net_buffer_length={int(net_buffer_length)};\n"
            f"SET GLOBAL max_allowed_packet={int(max_allowed_packet)};\n"
        )

    def restore(self, remote_dump: str) -> CommandResult:
        """Decompress and apply a dump that is already on the slave host"""
        dump = shlex.quote(remote_dump)
        # The pipeline's exit status is mysql's; gunzip -t covers the archive
        return self.shell.execute(
            f"gunzip -t {dump} && gunzip -c {dump} | {self.client_command()}"
        )

    def change_master(self, checkpoint: Checkpoint) -> CommandResult:
        return self.execute_sql(f"RESET SLAVE;\n{checkpoint.change_master_sql()}\n")

    def start_replication(self) -> CommandResult:
        return self.execute_sql("START SLAVE;\n")

    def status(self) -> CommandResult:
        return self.execute_sql("SHOW SLAVE STATUS\\G\n")


class ResyncResult:
    """Outcome of one database's pipeline"""

    def __init__(self, database: str):
        self.database = database
        self.state = ResyncState.NOT_STARTED
        self.checkpoint = None
        self.running = {}
        self.master_disk_available = None
        self.slave_disk_available = None

    @property
    def succeeded(self) -> bool:
        return self.state is ResyncState.CLEANED_UP

    def __repr__(self):
        return f"ResyncResult({self.database!r}, {self.state.name})"


class SlaveResyncTool:
    """Resync slave databases from the master, one database at a time"""

    REQUIRED_TOOLS = ['mysql', 'mysqldump', 'ssh', 'scp']

    def __init__(self, config: ResyncConfig, runner: Optional[CommandRunner] = None):
        config.validate()
        self.config = config
        self.runner = runner or CommandRunner()
        self.shell = RemoteShell(
            self.runner,
            host=config.slave_host,
            user=config.slave_user,
            port=config.ssh_port,
            key=config.ssh_key
        )
        self.results = []

    @staticmethod
    def check_database_names(databases: List[str]):
        if not databases:
            raise ConfigError("At least one database name is required")
        for database in databases:
            if not database or database.startswith('-') or '/' in database or '\0' in database:
                raise ConfigError(f"Invalid database name: {database!r}")

    def resync(self, databases: List[str]) -> bool:
        """Resync every database in order, stopping at the first failure"""
        self.check_database_names(databases)

        if not self.runner.check_tools(self.REQUIRED_TOOLS):
            return False

        os.makedirs(self.config.local_tmp_dir, exist_ok=True)

        logger.info(f"Master: {getpass.getuser()}@localhost")
        logger.info(f"Slave: {self.shell.remote_spec}")
        logger.info(f"Databases to resync: {' '.join(databases)}")

        for database in databases:
            try:
                self.resync_database(database)
            except ResyncError as err:
                logger.error(f"error: {err}")
                if isinstance(err, StepError) and err.output:
                    logger.error(err.output)
                return False

        logger.info("Resync completed successfully")
        return True

    def _begin(self, state: ResyncState):
        logger.info(f" - {STEP_LABELS[state]}")

    def _finish(self, result: ResyncResult, state: ResyncState,
                outcome: Optional[CommandResult] = None):
        if outcome is not None and not outcome.ok:
            raise StepError(STEP_LABELS[state], outcome.returncode, outcome.output)
        result.state = state

    def _report_disk(self, available: Optional[int]):
        if available is None:
            logger.warning("    - free disk space unknown")
        else:
            logger.info(f"    - {format_size(available)} available")

    def resync_database(self, database: str) -> ResyncResult:
        """Run the full pipeline for one database; raises StepError on failure"""
        config = self.config
        result = ResyncResult(database)
        self.results.append(result)

        master = MasterDatabase(self.runner, database, config.login_path, config.dump_options)
        slave = SlaveDatabase(self.shell, database, config.slave_db_user, config.slave_password)

        local_dump = os.path.join(config.local_tmp_dir, f"{database}.sql.gz")
        status_file = os.path.join(config.local_tmp_dir, f"{database}-master.status")
        remote_dump = posixpath.join(config.remote_tmp_dir, f"{database}.sql.gz")
        copy_attempted = False
        completed = False

        logger.info(f"Resync database {database}")
        try:
            self._begin(ResyncState.DISK_CHECKED_MASTER)
            result.master_disk_available = local_disk_available(config.local_tmp_dir)
            self._report_disk(result.master_disk_available)
            self._finish(result, ResyncState.DISK_CHECKED_MASTER)

            self._begin(ResyncState.MASTER_LOCKED)
            with master.read_lock() as lock:
                result.checkpoint = lock.checkpoint
                with open(status_file, 'w') as f:
                    f.write(''.join(line + '\n' for line in lock.status_lines))
                logger.info(f"    - MASTER_LOG_FILE: {lock.checkpoint.log_file}")
                logger.info(f"    - MASTER_LOG_POS: {lock.checkpoint.log_pos}")
                self._finish(result, ResyncState.MASTER_LOCKED)

                self._begin(ResyncState.DUMPED)
                self._finish(result, ResyncState.DUMPED, master.dump(local_dump))

                self._begin(ResyncState.MASTER_UNLOCKED)
                lock.release()
                self._finish(result, ResyncState.MASTER_UNLOCKED)

            self._begin(ResyncState.DISK_CHECKED_SLAVE)
            result.slave_disk_available = self.shell.disk_available(config.remote_tmp_dir)
            self._report_disk(result.slave_disk_available)
            self._finish(result, ResyncState.DISK_CHECKED_SLAVE)

            self._begin(ResyncState.TRANSFERRED)
            copy_attempted = True
            self._finish(result, ResyncState.TRANSFERRED,
                         self.shell.copy_to(local_dump, config.remote_tmp_dir))

            self._begin(ResyncState.SLAVE_STOPPED)
            self._finish(result, ResyncState.SLAVE_STOPPED, slave.stop_replication())

            self._begin(ResyncState.PACKET_SIZE_RAISED)
            self._finish(result, ResyncState.PACKET_SIZE_RAISED, slave.raise_packet_limits(
                config.net_buffer_length, config.max_allowed_packet
            ))

            self._begin(ResyncState.RESTORED)
            self._finish(result, ResyncState.RESTORED, slave.restore(remote_dump))

            self._begin(ResyncState.REPOSITIONED)
            self._finish(result, ResyncState.REPOSITIONED, slave.change_master(result.checkpoint))

            self._begin(ResyncState.SLAVE_STARTED)
            self._finish(result, ResyncState.SLAVE_STARTED, slave.start_replication())

            self._begin(ResyncState.STATUS_CHECKED)
            status = slave.status()
            self._finish(result, ResyncState.STATUS_CHECKED, status)
            result.running = running_state(parse_vertical_output(status.output))
            self._report_running(result.running)

            self._begin(ResyncState.CLEANED_UP)
            cleanup = self.shell.remove(remote_dump)
            if cleanup.ok:
                self._remove_local(local_dump, status_file)
            self._finish(result, ResyncState.CLEANED_UP, cleanup)

            completed = True
            return result

        finally:
            if not completed:
                result.state = ResyncState.FAILED
                self._discard_artifacts(
                    [local_dump, status_file], remote_dump if copy_attempted else None
                )

    def _report_running(self, running: Dict[str, str]):
        if not running:
            logger.warning("    - no replication status reported by slave")
            return
        for key, value in running.items():
            logger.info(f"    {key}: {value}")
        if any(value != 'Yes' for value in running.values()):
            logger.warning("    - replication threads are not all running")

    def _remove_local(self, *paths: str):
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as err:
                raise StepError(f"removing local dump files ({err})")

    def _discard_artifacts(self, local_paths: List[str], remote_path: Optional[str]):
        """Best-effort removal of dump files after a failed pipeline"""
        for path in local_paths:
            if not os.path.exists(path):
                continue
            try:
                os.remove(path)
            except OSError as err:
                logger.warning(f"Could not remove {path}: {err}")

        if remote_path is None:
            return
        try:
            removed = self.shell.remove(remote_path)
        except ResyncError as err:
            logger.warning(f"Could not remove {remote_path} on slave server: {err}")
            return
        if not removed.ok:
            logger.warning(
                f"Could not remove {remote_path} on slave server "
                f"(exit status {removed.returncode})"
            )


# Command-line options that map one-to-one onto config settings
CLI_SETTINGS = (
    'slave_host', 'slave_user', 'slave_password', 'slave_db_user',
    'ssh_port', 'ssh_key', 'login_path', 'local_tmp_dir', 'remote_tmp_dir',
)


def load_config(args: argparse.Namespace,
                environ: Optional[Mapping[str, str]] = None) -> ResyncConfig:
    """Merge config file, environment and command-line options, in that precedence"""
    settings = {}
    if args.config:
        settings.update(load_config_file(args.config))
    settings.update(settings_from_env(environ))
    for name in CLI_SETTINGS:
        value = getattr(args, name, None)
        if value is not None:
            settings[name] = value
    return ResyncConfig.from_dict(settings)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mysql-slave-resync',
        description='Resync one or more MySQL slave replication databases with their master. '
                    'Must be run on the master host; connects securely to the slave host.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Resync two databases using a config file
  mysql-slave-resync --config resync.json orders inventory

  # Settings from the environment
  MYSQL_RESYNC_SLAVE_HOST=db.example.com MYSQL_RESYNC_SLAVE_USER=deploy \\
  MYSQL_RESYNC_SLAVE_PASSWORD=secret mysql-slave-resync orders

  # Settings on the command line
  mysql-slave-resync --slave-host db.example.com --slave-user deploy \\
    --slave-password secret --ssh-key ~/.ssh/id_rsa orders

  # Show sample config
  mysql-slave-resync --sample-config
        """
    )

    parser.add_argument('databases', nargs='*', metavar='DB', help='Database to resync')
    parser.add_argument('--config', type=str, help='Path to JSON config file')
    parser.add_argument('--slave-host', type=str, help='Slave host (i.e.: db.example.com)')
    parser.add_argument('--slave-user', type=str, help='SSH user on the slave host')
    parser.add_argument('--slave-password', type=str, help='Password of the slave database administrative user')
    parser.add_argument('--slave-db-user', type=str, help='Slave database administrative user (default: root)')
    parser.add_argument('--ssh-port', type=int, help='SSH port (default: 22)')
    parser.add_argument('--ssh-key', type=str, help='SSH private key path')
    parser.add_argument('--login-path', type=str, help='Login path of the local master client (default: local)')
    parser.add_argument('--local-tmp-dir', type=str, help='Local scratch directory (default: /tmp/mysql-slave-resync)')
    parser.add_argument('--remote-tmp-dir', type=str, help='Scratch directory on the slave host (default: /tmp)')
    parser.add_argument('--sample-config', action='store_true', help='Print sample configuration')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set logging level
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    # Show sample config and exit
    if args.sample_config:
        create_sample_config()
        return 0

    try:
        config = load_config(args)
        config.validate()
    except ConfigError as err:
        parser.print_usage()
        logger.error(str(err))
        return 1

    if not args.databases:
        parser.print_help()
        logger.error("At least one database name is required")
        return 1

    try:
        tool = SlaveResyncTool(config)
        logger.info("Starting slave resync operation...")
        logger.debug(f"Configuration: {config.masked()}")

        success = tool.resync(args.databases)

        return 0 if success else 1

    except ConfigError as err:
        parser.print_usage()
        logger.error(str(err))
        return 1
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        return 1
    except Exception as err:
        logger.error(f"Unexpected error: {err}", exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
