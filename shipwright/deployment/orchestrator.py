#!/usr/bin/env python3
"""
shipwright deployment orchestrator
Ships releases to one or more stages, verifies them and rolls back when unhealthy
"""

import argparse
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import partial

from .env import render_env, masked_env, write_env
from .pipeline import DeployPipeline, Deployment, PreflightPhase
from .utils import StagePrefixedStream, confirm, format_size, print_phase, set_stage_prefix
from ..config import build_context, load_config, validate_config
from ..errors import DeployError, VerificationFailure


def report_error(error, stage=None):
    """Print an error with its guidance instead of a stack trace."""
    where = f" [{stage}]" if stage else ''
    print(f"\n✗ ERROR{where}: {error.message}")
    if error.guidance:
        print(f"  {error.guidance}")


def deploy_command(d, args):
    result = DeployPipeline(d).run()
    if result.status == 'rolled_back':
        print(f"\nWARNING: {result.stage} was rolled back to {result.rolled_back_to}")
    if result.error is not None:
        raise result.error
    return True


def verify_command(d, args):
    print_phase(None, 'DEPLOY VERIFY', d.stage)
    result = d.verify_health(deep=True if args.deep else None, quick=args.quick)
    if result is None:
        return True
    if not result.passed:
        raise VerificationFailure(f"Deployment verification failed: HTTP {result.status_code}", result=result)
    return True


def rollback_command(d, args):
    print_phase(None, 'ROLLBACK', d.stage)
    with_lock(d, lambda: d.releases.rollback(auto_rollback=True))
    return True


def rollback_list_command(d, args):
    releases = d.releases.list_releases()
    if not releases:
        print("WARNING: No releases found")
        return True

    active = d.releases.active_release()
    rollback_target = d.releases.previous_release(active) if active else None
    print("Available releases:\n")
    for release in releases:
        marker = ' [current]' if release == active else ''
        target = ' <- rollback target' if release == rollback_target else ''
        print(f"  {release}{marker}{target}")
    return True


def rollback_to_command(d, args):
    if not args.release:
        rollback_list_command(d, args)
        raise DeployError('rollback:to requires --release', guidance='Pick a release from the list above.')
    if not confirm(f"Rollback {d.stage} to release {args.release}?", args.yes):
        print("Rollback cancelled")
        return True
    with_lock(d, lambda: d.releases.rollback_to(args.release))
    return True


def rollback_cleanup_command(d, args):
    active = d.releases.active_release()
    if not confirm(f"Remove failed release {active} and keep previous?", args.yes):
        print("Cleanup cancelled")
        return True
    with_lock(d, d.releases.cleanup)
    return True


def db_backup_command(d, args):
    print_phase(None, 'DATABASE BACKUP', d.stage)
    handle = d.backups.backup(stage=d.stage)
    if handle.offsite:
        location = handle.offsite.get('s3_url') or handle.offsite.get('local_path')
        print(f"Off-host copy: {location}")
    return True


def db_backups_command(d, args):
    backups = d.backups.list_backups(stage=d.stage)
    if not backups:
        print("No backups found")
        return True
    print(f"Backups for {d.stage} (newest first):")
    for handle in backups:
        size = d.backups.file_size(handle.path)
        print(f"  {handle.filename}  {format_size(size)}")
    return True


def db_restore_command(d, args):
    backups = d.backups.list_backups(stage=d.stage)
    if not backups:
        print("WARNING: No backups found")
        return False

    if args.backup:
        matches = [handle for handle in backups if handle.filename == args.backup or handle.path == args.backup]
        if not matches:
            raise DeployError(f"Backup not found: {args.backup}", guidance='Run db:backups to list backups.')
        handle = matches[0]
    else:
        handle = backups[0]

    if not confirm(f"This will OVERWRITE the {d.stage} database with {handle.filename}. Continue?", args.yes):
        print("Restore cancelled")
        return True
    return with_lock(d, lambda: d.backups.restore(handle))


def migrate_status_command(d, args):
    print(d.migrations.status(d.release_settings.current_path))
    return True


def migrate_pretend_command(d, args):
    output = d.migrations.pretend(d.release_settings.current_path)
    if not output:
        print("No pending migrations")
    else:
        print("Migrations that would run:")
        print(output)
    return True


def preflight_command(d, args):
    print_phase(None, 'PREFLIGHT', d.stage)
    PreflightPhase(d).run(d.run_state)
    return True


def npm_cache_status_command(d, args):
    status = d.npm_cache().status()
    print("npm Cache Status:\n")
    for label, key in (('Lockfile', 'lockfile'), ('Assets', 'assets')):
        entry = status[key]
        print(f"  {label} hash (current):  {entry['current'] or 'n/a'}")
        print(f"  {label} hash (stored):   {entry['stored'] or 'not set'}")
        print(f"  {label} match: {'YES' if entry['match'] else 'NO'}\n")
    print("  Cached archives:")
    for archive in status['archives'] or ['No cached archives']:
        print(f"  {archive}")
    return True


def npm_cache_clear_command(d, args):
    d.npm_cache().clear()
    return True


def unlock_command(d, args):
    d.unlock()
    return True


def env_command(d, args):
    if args.show:
        for key, value in masked_env(render_env(d.ctx)).items():
            print(f"{key}={value}")
        return True
    write_env(d.executor, d.ctx)
    return True


def status_command(d, args):
    d.services.status()
    return True


def with_lock(d, action):
    d.lock()
    try:
        return action()
    finally:
        d.unlock()


COMMANDS = {
    'deploy': deploy_command,
    'deploy:verify': verify_command,
    'deploy:unlock': unlock_command,
    'deploy:env': env_command,
    'rollback': rollback_command,
    'rollback:list': rollback_list_command,
    'rollback:to': rollback_to_command,
    'rollback:cleanup': rollback_cleanup_command,
    'db:backup': db_backup_command,
    'db:backups': db_backups_command,
    'db:restore': db_restore_command,
    'migrate:status': migrate_status_command,
    'migrate:pretend': migrate_pretend_command,
    'preflight': preflight_command,
    'npm:cache:status': npm_cache_status_command,
    'npm:cache:clear': npm_cache_clear_command,
    'app:status': status_command,
}


def run_stage(command, stage, config, args, deployment_factory=Deployment.from_context):
    """Run one command against one stage. Returns True on success."""
    try:
        ctx = build_context(config, stage)
        d = deployment_factory(ctx, verbose=args.verbose, confirm=partial(confirm, assume_yes=args.yes))
        return bool(COMMANDS[command](d, args))
    except DeployError as e:
        report_error(e, stage)
        return False


def run_parallel(command, stages, config, args, deployment_factory=Deployment.from_context):
    """One worker per stage; output lines are prefixed with [stage]."""
    def worker(stage):
        set_stage_prefix(stage)
        try:
            return run_stage(command, stage, config, args, deployment_factory)
        finally:
            set_stage_prefix(None)

    results = {}
    original = sys.stdout
    sys.stdout = StagePrefixedStream(original)
    try:
        with ThreadPoolExecutor(max_workers=min(len(stages), 10)) as pool:
            futures = {pool.submit(worker, stage): stage for stage in stages}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
    finally:
        sys.stdout = original

    return results


def validate_command(config):
    is_valid, errors = validate_config(config)
    if is_valid:
        print("✓ Configuration is valid")
        return True
    print("✗ Configuration is invalid:")
    for error in errors:
        print(f"  - {error}")
    return False


def main(argv=None, deployment_factory=Deployment.from_context):
    """Main entry point - parse command line and run the command for each stage."""
    parser = argparse.ArgumentParser(
        prog='shipwright',
        description='shipwright release orchestrator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full deployment
  shipwright deploy prod

  # Deploy two stages at once
  shipwright deploy staging prod --parallel

  # Health checks
  shipwright deploy:verify prod --deep
  shipwright deploy:verify prod --quick

  # Releases and databases
  shipwright rollback:to prod --release 20250101120000
  shipwright db:restore prod --backup myapp_prod_2025-01-01-120000.sql.gz --yes

  # Validate deploy.yaml
  shipwright validate
        """
    )
    parser.add_argument('command', choices=list(COMMANDS) + ['validate'], help='Command to run')
    parser.add_argument('stages', nargs='*', help='Environment(s) defined in deploy.yaml')
    parser.add_argument('--config', help='Path to deploy.yaml (default: $SHIPWRIGHT_CONFIG or ./deploy.yaml)')
    parser.add_argument('-y', '--yes', action='store_true', help='Answer yes to confirmation prompts')
    parser.add_argument('-v', '--verbose', action='store_true', help='Echo (redacted) commands')
    parser.add_argument('--deep', action='store_true', help='deploy:verify: run deep health checks')
    parser.add_argument('--quick', action='store_true', help='deploy:verify: single attempt, status code only')
    parser.add_argument('--release', help='rollback:to: release to activate')
    parser.add_argument('--backup', help='db:restore: backup file to restore (default: newest)')
    parser.add_argument('--show', action='store_true', help='deploy:env: print the env (masked) instead of writing it')
    parser.add_argument('--parallel', action='store_true', help='Run multiple stages concurrently')
    args = parser.parse_args(argv)

    if args.command != 'validate' and not args.stages:
        parser.error(f"{args.command} requires at least one stage")

    if args.deep and args.quick:
        parser.error("--deep and --quick are mutually exclusive")

    try:
        config = load_config(args.config)
    except DeployError as e:
        report_error(e)
        sys.exit(1)

    if args.command == 'validate':
        sys.exit(0 if validate_command(config) else 1)

    if args.parallel and len(args.stages) > 1:
        results = run_parallel(args.command, args.stages, config, args, deployment_factory)
    else:
        results = {}
        for stage in args.stages:
            results[stage] = run_stage(args.command, stage, config, args, deployment_factory)

    failed = [stage for stage in args.stages if not results.get(stage)]
    if len(args.stages) > 1:
        print_phase(None, 'SUMMARY')
        for stage in args.stages:
            print(f"  {stage}: {'✗ failed' if stage in failed else '✓ ok'}")

    sys.exit(1 if failed else 0)


if __name__ == '__main__':
    main()
