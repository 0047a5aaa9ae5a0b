"""Command-line interface for rsnap.

    rsnap -s ~/Projects -d /Volumes/Backup            snapshot ~/Projects
    rsnap -s ~/Projects -d /Volumes/Backup -p -k 5    snapshot, then prune to 5 chains
    rsnap -d /Volumes/Backup -P -t                    show what pruning would delete
    rsnap -d /Volumes/Backup -l --json                list chains and snapshots

Settings come from an optional TOML file (--config, or
~/.config/rsnap/config.toml when it exists); flags win over the file.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rsnap import __version__
from rsnap.backup import EXIT_FAILURE, EXIT_INTERRUPTED, EXIT_SUCCESS, run_backup
from rsnap.config import (
    DEFAULT_CONFIG_PATH,
    Configuration,
    ConfigurationError,
    FilesystemType,
    PriorityLevel,
    ValidationError,
    build_config,
    parse_config,
)
from rsnap.layout import VaultLayout
from rsnap.logger import VALID_LOG_LEVELS, LoggingError, setup_logging
from rsnap.progress import Spinner
from rsnap.sync import SyncRunner


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='rsnap',
        description='Time Machine style snapshots with rsync and hard links',
    )
    parser.add_argument('-s', '--source', type=Path, help='Directory to back up')
    parser.add_argument('-d', '--destination', type=Path, help='Backup destination root')
    parser.add_argument('-v', '--vault', help='Vault name (default: hostname)')
    parser.add_argument(
        '-e', '--exclude-from', type=Path, dest='exclude_from',
        help='File of rsync exclude patterns',
    )
    parser.add_argument(
        '-f', '--fs-type', dest='fs_type',
        choices=[t.value for t in FilesystemType],
        help='Destination filesystem (default: unix)',
    )
    parser.add_argument(
        '-n', '--priority',
        choices=[p.value for p in PriorityLevel],
        help='CPU and bandwidth priority (default: normal)',
    )
    parser.add_argument(
        '-S', '--safe', dest='safe_mode', action='store_true', default=None,
        help='Skip symlinks',
    )
    parser.add_argument(
        '-F', '--force-full', dest='force_full', action='store_true', default=None,
        help='Start a new chain with a full backup',
    )
    parser.add_argument(
        '-A', '--allow-same-volume', dest='allow_same_volume', action='store_true',
        default=None, help='Allow source and destination on the same volume',
    )
    parser.add_argument(
        '--strict-volume-check', dest='strict_volume_check', action='store_true',
        default=None, help='Refuse to run when volumes cannot be identified',
    )
    parser.add_argument(
        '-P', '--prune-only', dest='prune_only', action='store_true', default=None,
        help='Prune old chains without backing up',
    )
    parser.add_argument(
        '-p', '--prune-after', dest='prune_after', action='store_true', default=None,
        help='Prune old chains after a successful backup',
    )
    parser.add_argument(
        '-k', '--keep', dest='keep_chains', type=int,
        help='Chains to keep when pruning (default: 3)',
    )
    parser.add_argument(
        '--full-every', dest='full_every', type=int,
        help='Snapshots per chain before a new full backup (default: 7)',
    )
    parser.add_argument(
        '-q', '--quiet', action='store_true', default=None,
        help='Only report warnings and errors',
    )
    parser.add_argument(
        '-t', '--dry-run', dest='dry_run', action='store_true', default=None,
        help='Show what would happen without changing anything',
    )
    parser.add_argument('--rsync', dest='rsync_path', help='rsync executable')
    parser.add_argument(
        '-c', '--config', type=Path,
        help=f'Configuration file (default: {DEFAULT_CONFIG_PATH} if present)',
    )
    parser.add_argument(
        '--log-level', dest='log_level', type=str.upper,
        choices=sorted(VALID_LOG_LEVELS),
    )
    parser.add_argument('--log-file', dest='log_file', type=Path)
    parser.add_argument(
        '-l', '--list', action='store_true',
        help='List chains and snapshots in the vault',
    )
    parser.add_argument(
        '--json', action='store_true',
        help='With --list, print JSON',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def _overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        key: getattr(args, key)
        for key in (
            'source', 'destination', 'vault', 'exclude_from', 'rsync_path',
            'safe_mode', 'force_full', 'allow_same_volume', 'strict_volume_check',
            'prune_only', 'prune_after', 'dry_run', 'quiet',
            'keep_chains', 'full_every', 'log_level', 'log_file',
        )
    }
    if args.fs_type is not None:
        overrides['fs_type'] = FilesystemType(args.fs_type)
    if args.priority is not None:
        overrides['priority'] = PriorityLevel(args.priority)
    for key in ('source', 'destination', 'exclude_from', 'log_file'):
        if overrides[key] is not None:
            overrides[key] = overrides[key].expanduser()
    return overrides


def load_config(args: argparse.Namespace) -> Configuration:
    """
    Build the run configuration from the config file (if any) and flags.

    Raises:
        ConfigurationError: If the file is unreadable or required values are missing
        ValidationError: If a value is invalid
    """
    overrides = _overrides_from_args(args)
    if args.config is not None:
        return parse_config(args.config, overrides)
    if DEFAULT_CONFIG_PATH.exists():
        return parse_config(DEFAULT_CONFIG_PATH, overrides)
    return build_config({}, overrides)


def _chains_as_dicts(config: Configuration) -> List[Dict[str, Any]]:
    output = []
    for chain in VaultLayout(config.destination, config.vault).scan():
        snapshots = []
        for snapshot in chain.snapshots:
            kind = chain.kind_of(snapshot)
            snapshots.append({
                "name": snapshot.name,
                "path": str(snapshot.path),
                "timestamp": snapshot.timestamp.isoformat(),
                "state": snapshot.state.value,
                "kind": kind.value if kind else None,
            })
        output.append({
            "chain": chain.name,
            "path": str(chain.path),
            "snapshots": snapshots,
        })
    return output


def cmd_list(config: Configuration, as_json: bool = False) -> int:
    """Print the vault's chains and their snapshots."""
    chains = _chains_as_dicts(config)

    if as_json:
        print(json.dumps(chains, indent=2))
        return EXIT_SUCCESS

    if not chains:
        print("No snapshots found.")
        return EXIT_SUCCESS

    snapshot_count = 0
    for chain in chains:
        print(f"Chain {chain['chain']}")
        for snapshot in chain['snapshots']:
            label = snapshot['kind'] or snapshot['state']
            print(f"  {snapshot['name']:<30} {label}")
            snapshot_count += 1
    print("-" * 46)
    print(f"Total: {len(chains)} chain(s), {snapshot_count} snapshot(s)")
    return EXIT_SUCCESS


def main(argv: Optional[list] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code: 0 on success, rsync's exit code when rsync failed,
        130 when interrupted, 1 for anything else
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except (ConfigurationError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        setup_logging(config.logging, quiet=config.quiet)
    except LoggingError as e:
        print(f"Logging error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.list:
        return cmd_list(config, as_json=args.json)

    spinner = Spinner()
    on_tick = spinner.tick if spinner.enabled and not config.quiet else None
    try:
        result = run_backup(config, runner=SyncRunner(on_tick=on_tick))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    finally:
        spinner.finish()

    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
