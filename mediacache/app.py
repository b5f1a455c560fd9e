"""
Command-line entry point for media-cache.

Usage:
    media_cache.py status
    media_cache.py enable | disable
    media_cache.py sweep <popular-sweep|recent-sweep|download-sync> [--scheduled]
    media_cache.py clear <category|all>
    media_cache.py clean | space | health | top [n]
    media_cache.py monitor [--quick-stats]
    media_cache.py activate-mount
    media_cache.py rollback [--detach-mount] [--yes]

Options:
    --config <file>   Settings file (default: $MEDIA_CACHE_SETTINGS or media_cache_settings.json)
    --dry-run         Log what would change without touching the cache
    --verbose, -v     Debug logging
    --quiet           Only notify on errors
    --scheduled       Run as a scheduled sweep: skip quietly if the job is already running

Exit status is 0 on success, 1 when a precondition fails or another
instance holds the job lock, 2 on usage or configuration errors.
"""

import logging
import sys
from typing import List, Optional

from mediacache import __version__
from mediacache.config import JOB_MONITOR, ConfigManager, resolve_settings_file
from mediacache.control import CacheControl
from mediacache.exceptions import LockNotAcquired, PreconditionError
from mediacache.logging_config import LoggingManager
from mediacache.system_utils import ConcurrencyGuard

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

COMMANDS = ("status", "enable", "disable", "sweep", "clear", "clean", "space", "health",
            "top", "monitor", "activate-mount", "rollback")

# Commands whose outcome goes to the notification channel
NOTIFYING_COMMANDS = ("sweep", "rollback")


def _option_value(args: List[str], option: str) -> Optional[str]:
    """Value following an option, removing both from args."""
    if option not in args:
        return None
    position = args.index(option)
    if position + 1 >= len(args):
        raise ValueError(f"{option} requires a value")
    value = args[position + 1]
    del args[position:position + 2]
    return value


def _log_name(command: str, positional: List[str]) -> str:
    if command == "sweep" and positional:
        return positional[0]
    if command == "monitor":
        return JOB_MONITOR
    if command == "rollback":
        return "rollback"
    return "cache-control"


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = list(sys.argv[1:] if argv is None else argv)

    if "--help" in args or "-h" in args:
        print(__doc__)
        return EXIT_OK
    if "--version" in args:
        print(f"media-cache {__version__}")
        return EXIT_OK

    try:
        config_file = resolve_settings_file(_option_value(args, "--config"))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    dry_run = "--dry-run" in args
    verbose = "--verbose" in args or "-v" in args
    quiet = "--quiet" in args
    quick = "--quick-stats" in args
    scheduled = "--scheduled" in args
    detach_mount = "--detach-mount" in args
    assume_yes = "--yes" in args or "-y" in args
    positional = [a for a in args if not a.startswith("-")]

    command = positional.pop(0) if positional else "status"
    if command not in COMMANDS:
        print(f"Unknown command: {command}\n{__doc__}", file=sys.stderr)
        return EXIT_USAGE

    config = ConfigManager(config_file)
    try:
        config.load_config()
    except (FileNotFoundError, ValueError, TypeError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    logging_manager = LoggingManager.from_config(
        config.paths.logs_folder, _log_name(command, positional), config.logging, verbose=verbose
    )
    # Quick stats runs every few minutes; keep it off the terminal
    logging_manager.setup_logging(console=not quick)
    if command in NOTIFYING_COMMANDS:
        logging_manager.setup_notification_handlers(config.notification, quiet=quiet)

    guard = ConcurrencyGuard(config.paths.lock_dir)
    control = CacheControl(config, guard, dry_run=dry_run)

    try:
        return _dispatch(control, command, positional, logging_manager,
                         quick=quick, scheduled=scheduled, detach_mount=detach_mount,
                         assume_yes=assume_yes)
    except PreconditionError as e:
        logging.error(f"Precondition failed: {e}", extra={"notify": True})
        return EXIT_FAILURE
    except LockNotAcquired as e:
        logging.error(str(e))
        return EXIT_FAILURE
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except KeyboardInterrupt:
        logging.warning("Interrupted; the next run will reconcile any partial changes")
        return EXIT_FAILURE
    finally:
        logging_manager.log_summary()
        guard.release_all()
        logging_manager.shutdown()


def _dispatch(control: CacheControl, command: str, positional: List[str],
              logging_manager: LoggingManager, quick: bool = False, scheduled: bool = False,
              detach_mount: bool = False, assume_yes: bool = False) -> int:
    if command == "status":
        print(control.status())
    elif command == "enable":
        print(control.enable())
    elif command == "disable":
        print(control.disable())
    elif command == "sweep":
        if not positional:
            raise ValueError("sweep requires a job name")
        result = control.sweep(positional[0], manual=not scheduled)
        for line in result.summary_lines():
            logging_manager.add_summary_message(line)
    elif command == "clear":
        if not positional:
            raise ValueError("clear requires a category name or 'all'")
        print(control.clear(positional[0]))
    elif command == "clean":
        print(control.clean())
    elif command == "space":
        print(control.space())
    elif command == "health":
        print(control.health())
    elif command == "top":
        count = int(positional[0]) if positional else 10
        print(control.top(count))
    elif command == "monitor":
        report = control.monitor(quick=quick)
        if report is not None:
            print(report.render())
    elif command == "activate-mount":
        print(control.activate_mount())
    elif command == "rollback":
        if not assume_yes and not control.confirm("This removes every cache link and all schedules. Continue?"):
            print("Cancelled")
            return EXIT_OK
        result = control.rollback(detach_mount=detach_mount, assume_yes=assume_yes)
        logging_manager.add_summary_message(
            f"Rollback complete: {result.schedules_removed} schedules and {result.links_removed} links removed"
        )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
