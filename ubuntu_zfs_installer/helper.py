#!/usr/bin/env python3
# zectl Helper
# Day-to-day boot environment tasks on an installed system

import argparse
import logging
import os
import re
import subprocess
import sys
from datetime import datetime

from rich.table import Table

from . import VERSION
from .errors import InstallerError, print_diagnostic
from .logger import LOGGER_NAME, console, setup_logging, success
from .prompts import Prompter
from .runner import CommandRunner
from .zectl_manager import BootEnvironmentManager

logger = logging.getLogger(f"{LOGGER_NAME}.helper")

BE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")
DEFAULT_CLEANUP_DAYS = 30


def detect_pool(runner, environ=None):
    """POOL_NAME from the environment, else the first pool with a ROOT dataset"""
    environ = environ if environ is not None else os.environ
    if environ.get("POOL_NAME"):
        return environ["POOL_NAME"]
    pools = runner.run(["zpool", "list", "-H", "-o", "name"], check=False).out.split()
    for pool in pools:
        if runner.run(["zfs", "list", "-H", "-o", "name", f"{pool}/ROOT"], check=False).ok:
            return pool
    return pools[0] if pools else None


class Helper:
    def __init__(self, runner, be_manager, prompter=None, assume_yes=False, now=None):
        self.runner = runner
        self.be_manager = be_manager
        self.prompter = prompter
        self.assume_yes = assume_yes
        self.now = now or datetime.now

    def confirm(self, message):
        if self.assume_yes:
            return True
        return self.prompter.confirm(message, default=False)

    def status(self, pool):
        environments = self.be_manager.list()
        current = next((env.name for env in environments if env.active_now), "unknown")
        console.print(f"Current BE: [green]{current}[/green]")

        table = Table(title="Boot Environments")
        for column in ("Name", "Active", "Mountpoint", "Creation"):
            table.add_column(column)
        for env in environments:
            table.add_row(env.name, env.active or "-", env.mountpoint or "-", env.creation)
        console.print(table)

        if pool:
            usage = self.runner.run(
                ["zfs", "list", "-o", "name,used,avail,refer,mountpoint", "-t", "filesystem", "-r", f"{pool}/ROOT"],
                check=False,
            )
            if usage.ok:
                console.print(usage.out.rstrip())

    def create_safe(self, name=None):
        """Snapshot the running BE, then create a new BE from it"""
        name = name or f"manual-{self.now():%Y%m%d-%H%M%S}"
        if not BE_NAME_RE.match(name):
            raise InstallerError("E081", f"invalid boot environment name {name!r}")

        current = self.be_manager.active()
        if current:
            snapshot = f"backup-{self.now():%Y%m%d-%H%M%S}"
            try:
                self.be_manager.snapshot(current.name, snapshot)
                success(logger, f"Created backup snapshot: {current.name}@{snapshot}")
            except subprocess.CalledProcessError:
                logger.warning("Failed to create backup snapshot, but continuing...")

        self.be_manager.create(name)
        success(logger, f"Created boot environment: {name}")
        return name

    def rollback(self, name=None):
        """Activate the given BE, or the most recent inactive one"""
        environments = self.be_manager.list()
        if name is None:
            inactive = [env for env in environments if not env.active_now]
            if not inactive:
                raise InstallerError("E081", "no previous boot environment found")
            inactive.sort(key=lambda env: env.created_at() or datetime.min, reverse=True)
            name = inactive[0].name
            logger.info(f"Auto-selected previous BE: {name}")
        elif name not in [env.name for env in environments]:
            raise InstallerError("E081", f"boot environment {name!r} not found")

        if not self.confirm(f"Activate '{name}' for the next boot?"):
            logger.info("Rollback cancelled.")
            return None
        self.be_manager.activate(name)
        success(logger, f"Activated: {name}")
        logger.info("Reboot to complete the rollback.")
        return name

    def cleanup(self, days=DEFAULT_CLEANUP_DAYS):
        """Destroy BEs older than `days`, never the running one"""
        logger.info(f"Cleaning up boot environments older than {days} days...")
        destroyed = []
        now = self.now()
        for env in self.be_manager.list():
            if env.active_now:
                continue
            created = env.created_at()
            if created is None:
                logger.warning(f"Could not determine creation date for: {env.name} (skipping)")
                continue
            age = (now - created).days
            if age <= days:
                continue
            if not self.confirm(f"Delete '{env.name}' ({age} days old)?"):
                continue
            try:
                self.be_manager.destroy(env.name)
                destroyed.append(env.name)
                success(logger, f"Deleted: {env.name}")
            except subprocess.CalledProcessError:
                logger.warning(f"Failed to delete: {env.name}")
        success(logger, "Cleanup completed")
        return destroyed


def build_parser():
    parser = argparse.ArgumentParser(prog="zectl-helper", description="Convenient wrapper for common zectl operations")
    parser.add_argument("--version", action="version", version=f"zectl Helper v{VERSION}")
    parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompts")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="Show BE status and disk usage")
    create = commands.add_parser("create-safe", help="Create BE with automatic snapshot")
    create.add_argument("name", nargs="?")
    rollback = commands.add_parser("rollback", help="Rollback to previous BE or specified BE")
    rollback.add_argument("name", nargs="?")
    cleanup = commands.add_parser("cleanup", help="Remove BEs older than N days")
    cleanup.add_argument("days", nargs="?", type=int, default=DEFAULT_CLEANUP_DAYS)
    return parser


def main(argv=None, runner=None, prompter=None):
    args = build_parser().parse_args(argv)
    setup_logging(log_dir=None)

    runner = runner or CommandRunner()
    helper = Helper(runner, BootEnvironmentManager(runner), prompter or Prompter(), assume_yes=args.yes)
    try:
        if not runner.which("zectl"):
            raise InstallerError("E062", "zectl is not installed or not in PATH")
        if args.command == "status":
            helper.status(detect_pool(runner))
        elif args.command == "create-safe":
            helper.create_safe(args.name)
        elif args.command == "rollback":
            helper.rollback(args.name)
        elif args.command == "cleanup":
            helper.cleanup(args.days)
    except InstallerError as e:
        print_diagnostic(e)
        return e.exit_code
    except subprocess.CalledProcessError as e:
        logger.error(f"{' '.join(e.cmd)} failed with exit code {e.returncode}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
