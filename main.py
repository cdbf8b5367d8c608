#!/usr/bin/env python3
# Ubuntu ZFS Installer
# Main entry point for the installer

import argparse
import logging
import sys
from dataclasses import replace

from rich.panel import Panel

from ubuntu_zfs_installer import VERSION
from ubuntu_zfs_installer.base_system import detect_codename
from ubuntu_zfs_installer.config import ZONEINFO_DIR, ConfigResolver, InstallConfig, load_config_file
from ubuntu_zfs_installer.disk_manager import DiskManager
from ubuntu_zfs_installer.errors import InstallerError, print_diagnostic
from ubuntu_zfs_installer.installer import Installer
from ubuntu_zfs_installer.logger import LOG_DIR, LOGGER_NAME, console, debug_enabled, setup_logging
from ubuntu_zfs_installer.preflight import Preflight
from ubuntu_zfs_installer.prompts import Prompter
from ubuntu_zfs_installer.runner import CommandRunner
from ubuntu_zfs_installer.state import StateStore

logger = logging.getLogger(LOGGER_NAME)

DEFAULT_CONFIG = "installer.conf"


def build_parser():
    parser = argparse.ArgumentParser(description="Ubuntu ZFS Boot Environment Installer")
    parser.add_argument("--version", action="version", version=f"Ubuntu ZFS Boot Environment Installer v{VERSION}")
    parser.add_argument("--resume", action="store_true", help="Resume an interrupted installation")
    parser.add_argument("--reset", action="store_true", help="Reset installation state and exit")
    parser.add_argument("--restart", action="store_true",
                        help="Unmount, export and clear state from a previous attempt, then start over")
    parser.add_argument("--non-interactive", action="store_true",
                        help="Never prompt; DISK, USERNAME and HOSTNAME must be configured")
    parser.add_argument("--dry-run", action="store_true", help="Validate and print the plan without changing anything")
    parser.add_argument("--config", default=DEFAULT_CONFIG, help="Path to installer.conf")
    parser.add_argument("--disk", help="Target disk, e.g. /dev/nvme0n1")
    parser.add_argument("--username", help="Primary user name")
    parser.add_argument("--hostname", help="Hostname of the new system")
    parser.add_argument("--pool-name", help="ZFS pool name")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    return parser


def cli_values(args):
    return {
        "disk": args.disk,
        "username": args.username,
        "hostname": args.hostname,
        "pool_name": args.pool_name,
    }


def print_banner():
    console.print(Panel(
        f"[bold]Ubuntu ZFS Boot Environment Installer v{VERSION}[/bold]\n\n"
        "WARNING: This installer will erase the selected disk. Make sure you have\n"
        "a backup of all important data before proceeding.",
        border_style="cyan",
        expand=False,
    ))


def print_completion(config):
    lines = [
        "[bold green]Installation completed successfully![/bold green]",
        "",
        f"Username: {config.username}",
        f"Hostname: {config.hostname}",
        f"Pool '{config.pool_name}' has been exported.",
    ]
    if not config.user_password:
        lines.append("A temporary password was set and must be changed at first login.")
    lines.append("")
    lines.append("Manage boot environments after reboot with: zectl list")
    console.print(Panel("\n".join(lines), border_style="green", expand=False))


def main(argv=None, runner=None, prompter=None, state=None, preflight=None,
         base_config=None, zoneinfo_dir=ZONEINFO_DIR, log_dir=LOG_DIR):
    args = build_parser().parse_args(argv)
    log_file = setup_logging(log_dir, debug=args.debug or debug_enabled())
    state = state or StateStore()

    if args.reset:
        if args.dry_run:
            logger.info(f"DRY-RUN: would remove {state.path}")
            return 0
        state.reset()
        logger.info("Installation state reset")
        return 0

    interactive = not args.non_interactive
    runner = runner or CommandRunner(dry_run=args.dry_run)
    if prompter is None and interactive:
        prompter = Prompter()

    try:
        print_banner()
        logger.info(f"Ubuntu ZFS Boot Environment Installer v{VERSION}")
        if log_file:
            logger.info(f"Logging to {log_file}")

        preflight = preflight or Preflight(runner)
        file_values = load_config_file(args.config)
        requested_version = file_values.get("UBUNTU_VERSION", "")
        if args.dry_run:
            version, os_release = preflight.detect_version(requested_version, strict=False)
        else:
            version, os_release = preflight.run(requested_version)
        codename = detect_codename(version, os_release)

        resolver = ConfigResolver(
            runner,
            prompter,
            interactive=interactive,
            zoneinfo_dir=zoneinfo_dir,
            list_disks=DiskManager(runner).get_available_disks,
        )
        base = replace(base_config or InstallConfig(), ubuntu_version=version)
        config = resolver.resolve(file_values, cli_values(args), base)

        installer = Installer(config, state, runner, codename, os_release, prompter, interactive)
        if args.dry_run:
            installer.disk_manager.guard_not_installation_media(config.disk)
            installer.print_plan()
            logger.info("Dry run complete, no changes were made.")
            return 0

        if args.restart:
            installer.restart()
        elif args.resume:
            logger.info("Resuming installation...")

        installer.run()
        print_completion(config)

        if interactive and prompter.confirm("Reboot now?", default=False):
            runner.run(["systemctl", "reboot"])
        else:
            logger.info("You can manually reboot when ready: sudo reboot")
        return 0

    except InstallerError as e:
        logger.error(str(e))
        print_diagnostic(e, log_file)
        return e.exit_code
    except KeyboardInterrupt:
        error = InstallerError("E080", "interrupted")
        logger.error(str(error))
        print_diagnostic(error, log_file)
        return error.exit_code
    except Exception as e:
        logger.exception(f"Unexpected error during installation: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
