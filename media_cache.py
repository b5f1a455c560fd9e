#!/usr/bin/env python3
"""media-cache - symlink acceleration cache in front of a NAS media library.

Usage:
    python media_cache.py status           # Show cache status
    python media_cache.py sweep popular-sweep
    python media_cache.py monitor --quick-stats
    python media_cache.py --help           # Show all commands
"""
import sys


def main():
    """Main entry point for media-cache."""
    from mediacache.app import main as app_main
    return app_main()


if __name__ == "__main__":
    sys.exit(main() or 0)
