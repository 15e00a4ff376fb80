#!/usr/bin/env python3
"""
DockSteward - keeps single-container services installed, current and backed up

Supported services: n8n and PostgreSQL.

    docksteward run --service n8n            # update, or restore / install, then schedule
    docksteward update --service postgres    # update the running instance only
    docksteward backup | restore | prune | schedule | history
    docksteward start | stop | restart | status | clean --yes | logs | info

Settings come from CLI flags first, then environment variables, then the
service's existing .env file. Nothing is prompted for, so the same command
line can run unattended from cron.
"""

import argparse
import asyncio
import logging
import os
import shlex
import shutil
import signal
import sys
from typing import Dict, List, Optional

from pydantic import ValidationError

from config.paths import BACKUP_ROOT, DATABASE_PATH, LOCK_FILE, LOG_DIR, SERVICES_DIR, ensure_data_dirs
from config.settings import AppConfig, setup_logging
from database import DatabaseManager
from deployment.compose_generator import read_env_file
from deployment.container_factory import ContainerFactory
from deployment.lifecycle import LifecycleCommand, LifecycleManager
from deployment.profiles import ServiceProfile, build_profile
from models.service_models import N8nSettings, PostgresSettings, ScheduleSpec
from scheduling.cron import CrontabScheduler
from updates.backup_manager import BackupManager, SqlDumper, VolumeArchiver
from updates.errors import ConfigurationError, StewardError
from updates.probe import EnvironmentProbe
from updates.types import Backup, BackupKind
from updates.workflow import ProvisioningWorkflow, RunSummary, ServiceContext
from utils.container_health import InstanceVerifier
from utils.docker_client import connect
from utils.run_lock import RunLock

logger = logging.getLogger(__name__)

SERVICES = ('n8n', 'postgres')

# Commands that change containers, data or backups hold the run lock
LOCKED_COMMANDS = {
    'run', 'update', 'backup', 'restore', 'prune',
    LifecycleCommand.START.value, LifecycleCommand.STOP.value,
    LifecycleCommand.RESTART.value, LifecycleCommand.CLEAN.value,
}

# Lifecycle commands worth a line in the run history
RECORDED_LIFECYCLE = {
    LifecycleCommand.START.value, LifecycleCommand.STOP.value,
    LifecycleCommand.RESTART.value, LifecycleCommand.CLEAN.value,
}


# ----------------------------------------------------------------------
# Argument parsing
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-s', '--service', choices=SERVICES,
                        default=os.getenv('DOCKSTEWARD_SERVICE'),
                        help='Service to manage (env DOCKSTEWARD_SERVICE)')
    common.add_argument('--log-level', default=None, help='Override DOCKSTEWARD_LOG_LEVEL')
    common.add_argument('--image', help='Image reference to run (default: latest tag of the service image)')
    common.add_argument('--port', type=int, help='Host port to publish')
    common.add_argument('--container-name', help='n8n container name')

    n8n = common.add_argument_group('n8n')
    n8n.add_argument('--domain', help='Public domain name (sets N8N_HOST and WEBHOOK_URL)')
    n8n.add_argument('--protocol', choices=('http', 'https'), help='Public protocol')
    n8n.add_argument('--timezone', help='GENERIC_TIMEZONE / TZ for the container')

    pg = common.add_argument_group('postgres')
    pg.add_argument('--pg-user', help='Database user (env POSTGRES_USER)')
    pg.add_argument('--pg-password', help='Database password (env POSTGRES_PASSWORD)')
    pg.add_argument('--pg-database', help='Database name (env POSTGRES_DB)')
    pg.add_argument('--no-port-shift', action='store_true',
                    help='Fail instead of moving to the next free port when the port is taken')

    parser = argparse.ArgumentParser(
        prog='docksteward',
        description='Install, update, back up and restore containerised services',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('run', parents=[common], help='Update the running instance, or restore / install it')
    p.add_argument('--allow-backup-failure', action='store_true',
                   help='Continue the update even if the pre-update backup fails')
    p.add_argument('--no-schedule', action='store_true', help='Do not register the periodic re-run')

    p = sub.add_parser('update', parents=[common], help='Update the running instance')
    p.add_argument('--allow-backup-failure', action='store_true',
                   help='Continue the update even if the pre-update backup fails')

    sub.add_parser('backup', parents=[common], help='Back up the running instance')

    p = sub.add_parser('restore', parents=[common], help='Restore from a backup (latest by default)')
    p.add_argument('--backup', dest='backup_path', help='Backup file to restore')
    p.add_argument('--force', action='store_true', help='Replace a running instance')

    sub.add_parser('prune', parents=[common], help='Delete backups older than the retention horizon')
    sub.add_parser('schedule', parents=[common], help='Register the periodic re-run in crontab')

    p = sub.add_parser('history', parents=[common], help='Show recent runs')
    p.add_argument('--limit', type=int, default=20)

    sub.add_parser('start', parents=[common], help='Start the service container')
    sub.add_parser('stop', parents=[common], help='Stop the service container')
    sub.add_parser('restart', parents=[common], help='Restart the service container')
    sub.add_parser('status', parents=[common], help='Show container state')
    p = sub.add_parser('clean', parents=[common], help='Remove the container and its data volumes')
    p.add_argument('--yes', action='store_true', help='Confirm the removal')
    p = sub.add_parser('logs', parents=[common], help='Show container logs')
    p.add_argument('--tail', type=int, default=100, help='Number of lines (0 = all)')
    p.add_argument('--errors', action='store_true', help='Only lines mentioning errors')
    p.add_argument('--follow', '-f', action='store_true', help='Stream new log lines')
    sub.add_parser('info', parents=[common], help='Show connection information')

    return parser


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------

def _first(*values):
    """First value that is neither None nor empty"""
    for value in values:
        if value is not None and value != '':
            return value
    return None


def _without_none(values: Dict) -> Dict:
    return {k: v for k, v in values.items() if v is not None}


def build_settings(service: str, args: argparse.Namespace, existing: Dict[str, str]):
    """
    Resolve service settings: flags, then environment, then the existing .env.

    Raises:
        ConfigurationError: missing or invalid values
    """
    try:
        if service == 'n8n':
            previous_host = existing.get('N8N_HOST')
            return N8nSettings(**_without_none({
                'image': _first(args.image, os.getenv('DOCKSTEWARD_N8N_IMAGE')),
                'container_name': _first(args.container_name, os.getenv('DOCKSTEWARD_N8N_CONTAINER')),
                'port': _first(args.port, os.getenv('DOCKSTEWARD_N8N_PORT')),
                'domain': _first(
                    args.domain,
                    os.getenv('N8N_DOMAIN'),
                    previous_host if previous_host != 'localhost' else None,
                ),
                'protocol': _first(args.protocol, os.getenv('N8N_PROTOCOL'), existing.get('N8N_PROTOCOL')),
                'timezone': _first(args.timezone, os.getenv('GENERIC_TIMEZONE'), existing.get('GENERIC_TIMEZONE')),
            }))

        if service == 'postgres':
            values = {
                'image': _first(args.image, os.getenv('DOCKSTEWARD_POSTGRES_IMAGE')),
                'user': _first(args.pg_user, os.getenv('POSTGRES_USER'), existing.get('POSTGRES_USER')),
                'password': _first(args.pg_password, os.getenv('POSTGRES_PASSWORD'), existing.get('POSTGRES_PASSWORD')),
                'database': _first(args.pg_database, os.getenv('POSTGRES_DB'), existing.get('POSTGRES_DB')),
                # A port chosen by an earlier shift stays stable across runs
                'port': _first(args.port, os.getenv('DOCKSTEWARD_POSTGRES_PORT'), existing.get('POSTGRES_PORT')),
                'allow_port_shift': False if args.no_port_shift else None,
            }
            missing = [name for name in ('user', 'password', 'database') if values[name] is None]
            if missing:
                raise ConfigurationError(
                    f"PostgreSQL {', '.join(missing)} not set; pass --pg-user/--pg-password/--pg-database "
                    f"or set POSTGRES_USER/POSTGRES_PASSWORD/POSTGRES_DB",
                    service=service,
                )
            return PostgresSettings(**_without_none(values))
    except ValidationError as e:
        problems = '; '.join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid {service} settings: {problems}", service=service) from e

    raise ConfigurationError(f"Unknown service: {service}")


def schedule_command(service: str) -> str:
    """Shell command cron runs to re-run the workflow"""
    executable = shutil.which('docksteward')
    if executable:
        parts = [executable]
    else:
        parts = [sys.executable, os.path.abspath(__file__)]
    parts += ['run', '--service', service]
    command = ' '.join(shlex.quote(p) for p in parts)

    data_dir = os.getenv('DOCKSTEWARD_DATA_DIR')
    if data_dir:
        command = f"DOCKSTEWARD_DATA_DIR={shlex.quote(data_dir)} {command}"
    return f"{command} >> {shlex.quote(os.path.join(LOG_DIR, 'cron.log'))} 2>&1"


def build_schedule_spec(service: str) -> ScheduleSpec:
    try:
        return ScheduleSpec(
            minute=AppConfig.SCHEDULE_MINUTE,
            hour=AppConfig.SCHEDULE_HOUR,
            day_of_month=AppConfig.SCHEDULE_DAY_OF_MONTH,
            command=schedule_command(service),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid schedule settings: {e}") from e


def build_backup_manager(client, profile: ServiceProfile, desired) -> BackupManager:
    if profile.backup_kind is BackupKind.DUMP:
        strategy = SqlDumper(profile.settings.user, profile.settings.database)
    else:
        strategy = VolumeArchiver(desired.data_path)
    return BackupManager(
        client,
        profile.name,
        os.path.join(BACKUP_ROOT, profile.name),
        strategy,
        retention_days=AppConfig.BACKUP_RETENTION_DAYS,
    )


def build_context(args: argparse.Namespace, client, db: Optional[DatabaseManager]) -> ServiceContext:
    """Everything a workflow or lifecycle command needs for one service"""
    service = args.service
    service_dir = os.path.join(SERVICES_DIR, service)
    existing = read_env_file(os.path.join(service_dir, '.env'))

    settings = build_settings(service, args, existing)
    profile = build_profile(service, service_dir, settings)
    desired = profile.build_desired(profile.build_environment(existing))

    return ServiceContext(
        client=client,
        profile=profile,
        desired=desired,
        backup_manager=build_backup_manager(client, profile, desired),
        factory=ContainerFactory(client, pull_timeout=AppConfig.PULL_TIMEOUT),
        verifier=InstanceVerifier(
            client,
            timeout=AppConfig.HEALTH_CHECK_TIMEOUT,
            interval=AppConfig.HEALTH_CHECK_INTERVAL,
        ),
        probe=EnvironmentProbe(client),
        scheduler=CrontabScheduler(),
        schedule_spec=build_schedule_spec(service),
        db=db,
        allow_backup_failure=getattr(args, 'allow_backup_failure', False),
    )


# ----------------------------------------------------------------------
# Command execution
# ----------------------------------------------------------------------

def _print_summary(summary: RunSummary):
    for line in summary.lines:
        print(line)
    if not summary.success:
        print(f"{summary.service} {summary.action}: {summary.outcome}", file=sys.stderr)


def _print_history(db: DatabaseManager, service: Optional[str], limit: int):
    runs = db.recent_runs(service=service, limit=limit)
    if not runs:
        print("No runs recorded")
        return
    for run in runs:
        duration = run.duration_seconds
        took = f"{duration:.0f}s" if duration is not None else '-'
        line = f"{run.started_at:%Y-%m-%d %H:%M:%S}  {run.service:<9} {run.action:<8} {run.outcome:<16} {took:>6}"
        if run.version:
            line += f"  v{run.version}"
        if run.rolled_back:
            line += "  (rolled back)"
        if run.error:
            line += f"  {run.error}"
        print(line)


async def _lifecycle(args: argparse.Namespace, ctx: ServiceContext) -> RunSummary:
    manager = LifecycleManager(ctx.client, ctx.profile, ctx.desired)
    run_id = None
    if ctx.db is not None and args.command in RECORDED_LIFECYCLE:
        run_id = ctx.db.start_run(ctx.profile.name, args.command, ctx.desired.container_name)
    try:
        summary = await manager.dispatch(
            LifecycleCommand(args.command),
            confirm=getattr(args, 'yes', False),
            tail=getattr(args, 'tail', 100),
            errors_only=getattr(args, 'errors', False),
            follow=getattr(args, 'follow', False),
        )
    except StewardError as e:
        if run_id is not None:
            ctx.db.finish_run(run_id, 'failed', error=e.message)
        raise
    if run_id is not None:
        ctx.db.finish_run(run_id, summary.outcome if summary.success else 'failed')
    return summary


async def execute(args: argparse.Namespace, client, db: Optional[DatabaseManager]) -> RunSummary:
    """Run one command against an already connected Docker client"""
    ctx = build_context(args, client, db)
    workflow = ProvisioningWorkflow(ctx)

    if args.command == 'run':
        return await workflow.run(schedule=not args.no_schedule)
    if args.command == 'update':
        return await workflow.update()
    if args.command == 'backup':
        return await workflow.backup()
    if args.command == 'restore':
        backup = None
        if args.backup_path:
            backup = Backup.from_path(os.path.abspath(args.backup_path))
            if backup is None or backup.service != ctx.profile.name:
                raise ConfigurationError(f"{args.backup_path} is not a {ctx.profile.name} backup file")
        return await workflow.restore(backup=backup, force=args.force)
    if args.command == 'prune':
        return workflow.prune()
    if args.command == 'schedule':
        return workflow.ensure_schedule()
    return await _lifecycle(args, ctx)


async def _run_cancellable(coro):
    """Run coro as a task that SIGTERM cancels, so rollback code still runs"""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(coro)
    try:
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    except (NotImplementedError, RuntimeError):
        pass  # Signal handlers unavailable (non-main thread)
    try:
        return await task
    finally:
        try:
            loop.remove_signal_handler(signal.SIGTERM)
        except (NotImplementedError, RuntimeError):
            pass


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse exits 2 on usage errors and 0 for --help
        return 1 if e.code else 0

    if args.command != 'history' and not args.service:
        print("Error: --service is required (or set DOCKSTEWARD_SERVICE)", file=sys.stderr)
        return 1

    try:
        ensure_data_dirs()
    except PermissionError as e:
        print(f"Permission denied creating DockSteward directories: {e}", file=sys.stderr)
        return 1
    setup_logging(args.log_level or AppConfig.LOG_LEVEL)

    try:
        AppConfig.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    db = DatabaseManager(DATABASE_PATH)

    if args.command == 'history':
        _print_history(db, args.service, args.limit)
        return 0

    lock = RunLock(LOCK_FILE) if args.command in LOCKED_COMMANDS else None
    try:
        if lock is not None:
            lock.acquire()
        # Schedule and prune don't talk to the daemon
        client = None
        if args.command not in ('schedule', 'prune'):
            client = connect(AppConfig.DOCKER_URL, timeout=AppConfig.DOCKER_TIMEOUT)
        summary = asyncio.run(_run_cancellable(execute(args, client, db)))
    except StewardError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.error(f"{args.command} interrupted")
        print("Interrupted", file=sys.stderr)
        return 1
    finally:
        if lock is not None:
            lock.release()

    _print_summary(summary)
    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
