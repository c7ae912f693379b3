import argparse
import sys
from pathlib import Path

from btrfs_replicator.__version__ import __version__
from btrfs_replicator.config.settings import get_setting, load_settings
from btrfs_replicator.domain import ReplicationJob
from btrfs_replicator.logging import LoggerFactory, setup_logging
from btrfs_replicator.services.replication import Replicator
from btrfs_replicator.storage.exceptions import ConfigurationError, ReplicationError
from btrfs_replicator.storage.validation import validate_privileges


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="btrfs-replicator",
        description="Replicate a btrfs filesystem with all its subvolumes to another btrfs filesystem",
    )
    parser.add_argument("source", help="Mount point of the source filesystem (absolute path)")
    parser.add_argument("destination", help="Mount point of the destination filesystem (absolute path)")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Increase log detail (repeatable)"
    )
    parser.add_argument("--log-config", type=Path, help="JSON logging configuration file")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument(
        "-n", "--dry-run", action="store_true", help="Only print the commands that would change anything"
    )
    parser.add_argument(
        "--root-snapshot-name", help="Name of the replicated root subvolume (default: timestamped)"
    )
    parser.add_argument(
        "--edit-fstab",
        action="store_true",
        help="Point the destination's fstab entry at the replicated root subvolume",
    )
    parser.add_argument("--fstab", help="fstab file to edit (default: /etc/fstab)")
    parser.add_argument("--btrfs", help="btrfs executable (default: btrfs)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    load_settings()

    try:
        setup_logging(verbose=args.verbose, debug=args.debug, log_config=args.log_config)
    except ConfigurationError as error:
        print(f"btrfs-replicator: {error}", file=sys.stderr)
        return 1

    log = LoggerFactory.for_system()
    log.debug(f"btrfs-replicator {__version__} arguments: {vars(args)}")

    job = ReplicationJob(
        source=args.source,
        destination=args.destination,
        dry_run=args.dry_run,
        root_snapshot_name=args.root_snapshot_name,
        edit_fstab=args.edit_fstab,
        fstab_path=args.fstab or get_setting("fstab_path"),
        btrfs_command=args.btrfs or get_setting("btrfs_command"),
    )

    try:
        validate_privileges()
        report = Replicator(job).run()
    except ReplicationError as error:
        log.error(str(error))
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130

    if report.failures:
        log.warning(f"{len(report.failures)} step(s) failed; see warnings above")
        for failure in report.failures:
            log.warning(f"  {failure.step.value} {failure.target}: {failure.message}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
