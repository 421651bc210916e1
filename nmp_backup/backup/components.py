"""
Component adapters: one per store that goes into a backup archive.

Supports:
- PostgresAdapter: pg_dump / psql plain-text dump (mandatory)
- InfluxDBAdapter: influx backup / restore (best-effort)
- DirectoryAdapter: verbatim copy of the config and plugin trees (best-effort)

Adapters only write inside the directory they are handed. The registry keeps
them in canonical order; the orchestrator runs components in that order no
matter how the caller listed them.
"""

import logging
import os
import shutil
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy.engine import make_url

from .errors import ProcessInvocationFailed, UnknownComponentError
from .process import OperationContext, run_tool


logger = logging.getLogger(__name__)

POSTGRES = 'postgres'
INFLUXDB = 'influxdb'
CONFIG = 'config'
PLUGINS = 'plugins'

DEFAULT_BACKUP_COMPONENTS = (POSTGRES, INFLUXDB, CONFIG)
DEFAULT_RESTORE_COMPONENTS = (POSTGRES, CONFIG)

# Best-effort tools may use at most this share of the time left in the operation
BEST_EFFORT_TIME_SHARE = 0.5


class ComponentAdapter:
    """
    Backup/restore capability for one store.

    backup() writes into dest_dir (the staging directory) and restore() reads
    from source_dir (the extracted archive). Both return True when the
    component was actually written or restored and False when it was skipped.
    Mandatory adapters raise on failure; best-effort adapters may absorb
    their own failures.
    """

    name: str = ''
    mandatory: bool = False

    def backup(self, dest_dir: str, context: OperationContext) -> bool:
        raise NotImplementedError

    def restore(self, source_dir: str, context: OperationContext) -> bool:
        raise NotImplementedError

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.name} mandatory={self.mandatory}>'


class PostgresAdapter(ComponentAdapter):
    """
    PostgreSQL via pg_dump (plain format) and psql.

    The password only ever travels in PGPASSWORD; host, port, user and
    database are passed as arguments.
    """

    name = POSTGRES
    mandatory = True
    dump_filename = 'postgres_dump.sql'

    def __init__(self, host: str = 'localhost', port: int = 5432, username: Optional[str] = None,
                 password: Optional[str] = None, database: Optional[str] = None,
                 pg_dump_bin: str = 'pg_dump', psql_bin: str = 'psql',
                 include_schema: bool = True, include_data: bool = True,
                 drop_existing: bool = False, create_database: bool = False,
                 ignore_errors: bool = False):
        if not include_schema and not include_data:
            raise ValueError("At least one of include_schema/include_data must be set")
        if not database:
            raise ValueError("A database name is required")

        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.database = database
        self.pg_dump_bin = pg_dump_bin
        self.psql_bin = psql_bin
        self.include_schema = include_schema
        self.include_data = include_data
        self.drop_existing = drop_existing
        self.create_database = create_database
        self.ignore_errors = ignore_errors

    @classmethod
    def from_url(cls, url: str, **kwargs) -> 'PostgresAdapter':
        """
        Build an adapter from a SQLAlchemy database URL.

        Args:
            url: e.g. postgresql://nmp:secret@db:5432/nmp_platform
            **kwargs: Remaining PostgresAdapter options

        Returns:
            PostgresAdapter
        """
        parsed = make_url(url)
        return cls(
            host=parsed.host or 'localhost',
            port=parsed.port or 5432,
            username=parsed.username,
            password=parsed.password,
            database=parsed.database,
            **kwargs
        )

    def _connection_args(self, database: str) -> List[str]:
        args = ['-h', self.host, '-p', str(self.port)]
        if self.username:
            args += ['-U', self.username]
        args += ['-d', database]
        return args

    def _env(self) -> Dict[str, str]:
        return {'PGPASSWORD': self.password} if self.password else {}

    def backup(self, dest_dir: str, context: OperationContext) -> bool:
        dump_file = os.path.join(dest_dir, self.dump_filename)
        logger.info(f"Backing up PostgreSQL database {self.database}@{self.host}:{self.port}")

        args = [self.pg_dump_bin] + self._connection_args(self.database) + ['-F', 'p', '-f', dump_file]
        if not self.include_data:
            args.append('--schema-only')
        if not self.include_schema:
            args.append('--data-only')

        run_tool(args, env=self._env(), context=context)

        logger.info(f"PostgreSQL backup completed: {dump_file}")
        return True

    def restore(self, source_dir: str, context: OperationContext) -> bool:
        dump_file = os.path.join(source_dir, self.dump_filename)
        if not os.path.isfile(dump_file):
            raise FileNotFoundError(f"PostgreSQL dump not found in backup: {self.dump_filename}")

        logger.info(f"Restoring PostgreSQL database {self.database}@{self.host}:{self.port}")

        if self.drop_existing:
            self._admin_command(f"DROP DATABASE IF EXISTS {_quote_ident(self.database)};", context)
        if self.create_database:
            self._admin_command(f"CREATE DATABASE {_quote_ident(self.database)};", context)

        on_error_stop = 'off' if self.ignore_errors else 'on'
        args = [self.psql_bin] + self._connection_args(self.database) + [
            '-f', dump_file,
            '--set', f'ON_ERROR_STOP={on_error_stop}'
        ]
        run_tool(args, env=self._env(), context=context)

        logger.info("PostgreSQL restored successfully")
        return True

    def _admin_command(self, sql: str, context: OperationContext):
        # Drop/create must run against the maintenance database
        args = [self.psql_bin] + self._connection_args('postgres') + ['-c', sql]
        run_tool(args, env=self._env(), context=context)
        logger.info(f"Executed: {sql}")


class InfluxDBAdapter(ComponentAdapter):
    """
    InfluxDB 2.x via the influx CLI.

    The time-series store can be recovered on its own, so tool failures are
    logged as warnings here and never reach the orchestrator. Each call is
    limited to a share of the time left in the operation and is killed as a
    failure when it runs over. Cancellation still propagates.
    """

    name = INFLUXDB
    mandatory = False
    subdir = 'influxdb'

    def __init__(self, url: Optional[str] = None, org: Optional[str] = None,
                 token: Optional[str] = None, influx_bin: str = 'influx'):
        self.url = url
        self.org = org
        self.token = token
        self.influx_bin = influx_bin

    def _scope_args(self) -> List[str]:
        args = []
        if self.url:
            args += ['--host', self.url]
        if self.org:
            args += ['--org', self.org]
        return args

    def _env(self) -> Dict[str, str]:
        return {'INFLUX_TOKEN': self.token} if self.token else {}

    def _tool_timeout(self, context: OperationContext) -> Optional[float]:
        remaining = context.remaining()
        if remaining is None:
            return None
        return remaining * BEST_EFFORT_TIME_SHARE

    def backup(self, dest_dir: str, context: OperationContext) -> bool:
        target = os.path.join(dest_dir, self.subdir)
        logger.info("Backing up InfluxDB...")

        try:
            os.makedirs(target, exist_ok=True)
            run_tool(
                [self.influx_bin, 'backup', target] + self._scope_args(),
                env=self._env(),
                context=context,
                timeout=self._tool_timeout(context)
            )
        except (ProcessInvocationFailed, OSError) as e:
            logger.warning(f"InfluxDB backup failed, continuing without it: {e}")
            shutil.rmtree(target, ignore_errors=True)
            return False

        logger.info(f"InfluxDB backup completed: {target}")
        return True

    def restore(self, source_dir: str, context: OperationContext) -> bool:
        target = os.path.join(source_dir, self.subdir)
        if not os.path.isdir(target) or not os.listdir(target):
            logger.warning("InfluxDB backup not found in archive, skipping")
            return False

        logger.info("Restoring InfluxDB...")
        try:
            run_tool(
                [self.influx_bin, 'restore', target] + self._scope_args() + ['--full'],
                env=self._env(),
                context=context,
                timeout=self._tool_timeout(context)
            )
        except ProcessInvocationFailed as e:
            logger.warning(f"InfluxDB restore failed: {e}")
            return False

        logger.info("InfluxDB restored successfully")
        return True


class DirectoryAdapter(ComponentAdapter):
    """
    Verbatim copy of an on-disk tree (config files, plugins).

    Mode bits are preserved. A file that cannot be copied is logged and
    skipped; the rest of the tree is still copied.
    """

    mandatory = False

    def __init__(self, name: str, root: Optional[str], exclude_patterns: Optional[List[str]] = None):
        """
        Args:
            name: Component name, also the subdirectory inside the archive
            root: Live directory to back up and restore into (None = not configured)
            exclude_patterns: Glob patterns to skip (e.g. *.pyc, __pycache__)
        """
        self.name = name
        self.root = root
        self.exclude_patterns = exclude_patterns or []

    def backup(self, dest_dir: str, context: OperationContext) -> bool:
        target = os.path.join(dest_dir, self.name)
        logger.info(f"Backing up {self.name} files...")

        if not self.root:
            logger.info(f"No {self.name} directory configured, skipping")
            return False
        if not os.path.isdir(self.root):
            logger.warning(f"{self.name} directory does not exist: {self.root}")
            return False

        failures = copy_tree(self.root, target, context, self.exclude_patterns)
        if failures:
            logger.warning(f"{self.name} backup partial: {len(failures)} item(s) skipped")

        logger.info(f"{self.name} backup completed")
        return True

    def restore(self, source_dir: str, context: OperationContext) -> bool:
        source = os.path.join(source_dir, self.name)
        if not os.path.isdir(source):
            logger.warning(f"{self.name} backup not found in archive, skipping")
            return False
        if not self.root:
            logger.warning(f"No {self.name} directory configured, cannot restore")
            return False

        logger.info(f"Restoring {self.name} files into {self.root}")
        failures = copy_tree(source, self.root, context)
        if failures:
            logger.warning(f"{self.name} restore partial: {len(failures)} item(s) skipped")

        logger.info(f"{self.name} restored")
        return True


class ComponentRegistry:
    """
    Ordered mapping of component name to adapter.

    Registration order is the canonical execution order.
    """

    def __init__(self, adapters: Iterable[ComponentAdapter] = ()):
        self._adapters: Dict[str, ComponentAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ComponentAdapter):
        if not adapter.name:
            raise ValueError(f"Adapter has no name: {adapter!r}")
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ComponentAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise UnknownComponentError(name)

    def names(self) -> List[str]:
        return list(self._adapters)

    def validate(self, names: Iterable[str]) -> List[str]:
        """
        Check names against the registry and drop duplicates, keeping order.

        Raises:
            UnknownComponentError: If a name is not registered
        """
        result = []
        for name in names:
            self.get(name)
            if name not in result:
                result.append(name)
        return result

    def ordered(self, names: Iterable[str]) -> List[ComponentAdapter]:
        """Adapters for `names` in canonical order."""
        wanted = set(self.validate(names))
        return [adapter for name, adapter in self._adapters.items() if name in wanted]

    def __contains__(self, name) -> bool:
        return name in self._adapters

    def __iter__(self) -> Iterator[ComponentAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)


def create_default_registry(database_url: Optional[str] = None,
                            influxdb_url: Optional[str] = None,
                            influxdb_org: Optional[str] = None,
                            influxdb_token: Optional[str] = None,
                            config_dir: Optional[str] = None,
                            plugins_dir: Optional[str] = None,
                            exclude_patterns: Optional[List[str]] = None,
                            pg_dump_bin: str = 'pg_dump',
                            psql_bin: str = 'psql',
                            influx_bin: str = 'influx',
                            **postgres_options) -> ComponentRegistry:
    """
    Build the platform's standard registry: postgres, influxdb, config, plugins.

    The postgres adapter is only registered when a database URL is given.

    Returns:
        ComponentRegistry in canonical order
    """
    registry = ComponentRegistry()

    if database_url:
        registry.register(PostgresAdapter.from_url(
            database_url,
            pg_dump_bin=pg_dump_bin,
            psql_bin=psql_bin,
            **postgres_options
        ))

    registry.register(InfluxDBAdapter(
        url=influxdb_url,
        org=influxdb_org,
        token=influxdb_token,
        influx_bin=influx_bin
    ))
    registry.register(DirectoryAdapter(CONFIG, config_dir, exclude_patterns))
    registry.register(DirectoryAdapter(PLUGINS, plugins_dir, exclude_patterns))

    return registry


def should_exclude(path: Path, patterns: List[str]) -> bool:
    """
    Check if a path matches any exclude pattern.

    Patterns are matched against the full path and the bare name; a leading
    '**/' matches at any depth.
    """
    if not patterns:
        return False

    path_str = str(path)
    path_name = path.name

    for pattern in patterns:
        if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
            return True
        if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
            return True

    return False


def copy_tree(src: str, dst: str, context: Optional[OperationContext] = None,
              exclude_patterns: Optional[List[str]] = None) -> List[str]:
    """
    Recursively copy src into dst, preserving mode bits.

    Unlike shutil.copytree this keeps going after an error: each file that
    fails is logged and reported back.

    Args:
        src: Source directory
        dst: Destination directory (created if missing, merged if present)
        context: Checked once per directory for cancellation
        exclude_patterns: Glob patterns to skip

    Returns:
        Paths that could not be copied
    """
    failures: List[str] = []
    src_root = Path(src)
    dst_root = Path(dst)
    patterns = exclude_patterns or []
    # Directory modes are applied last so read-only dirs can still be filled
    dir_modes = []

    def _onerror(err: OSError):
        logger.warning(f"Cannot read {err.filename}: {err}")
        failures.append(str(err.filename))

    for dirpath, dirnames, filenames in os.walk(src_root, onerror=_onerror):
        if context is not None:
            context.check()

        current = Path(dirpath)
        target_dir = dst_root / current.relative_to(src_root)

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Skipping directory {current}: {e}")
            failures.append(str(current))
            dirnames[:] = []
            continue
        dir_modes.append((current, target_dir))

        kept_dirs = []
        for dirname in dirnames:
            source_dir = current / dirname
            if should_exclude(source_dir, patterns):
                continue
            if source_dir.is_symlink():
                _copy_entry(source_dir, target_dir / dirname, failures)
                continue
            kept_dirs.append(dirname)
        dirnames[:] = kept_dirs

        for filename in filenames:
            source_file = current / filename
            if should_exclude(source_file, patterns):
                continue
            _copy_entry(source_file, target_dir / filename, failures)

    for source_dir, target_dir in reversed(dir_modes):
        try:
            shutil.copymode(source_dir, target_dir)
        except OSError as e:
            logger.warning(f"Cannot set mode on {target_dir}: {e}")

    return failures


def _copy_entry(source: Path, target: Path, failures: List[str]):
    try:
        if source.is_symlink():
            if target.is_symlink() or target.exists():
                target.unlink()
            os.symlink(os.readlink(source), target)
        else:
            shutil.copy2(source, target)
    except OSError as e:
        logger.warning(f"Skipping {source}: {e}")
        failures.append(str(source))


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'
