#!/usr/bin/env python3
# Installer Module
# Drives the installation stages in order, skipping completed ones

import logging
import os
import shutil
import subprocess

from rich.table import Table

from .base_system import BaseSystemInstaller
from .boot_manager import BootManager
from .disk_manager import DiskManager
from .errors import InstallerError
from .logger import console, success
from .mirror import MirrorSelector
from .state import Stage
from .system_config import SystemConfig
from .zectl_manager import BootEnvironmentManager
from .zfs_manager import ZFSManager

logger = logging.getLogger(__name__)

POST_INSTALL_TARGET = "tmp/post-install.sh"


class Installer:
    def __init__(self, config, state, runner, codename, os_release=None, prompter=None, interactive=False):
        self.config = config
        self.state = state
        self.runner = runner
        self.codename = codename
        self.os_release = os_release or {}
        self.disk_manager = DiskManager(runner, prompter, interactive)
        self.zfs_manager = ZFSManager(runner)
        self.base_system = BaseSystemInstaller(runner, MirrorSelector(runner))
        self.system_config = SystemConfig(runner, self.zfs_manager)
        self.be_manager = BootEnvironmentManager(runner, root=config.root_mount)
        self.boot_manager = BootManager(runner)
        self.layout = None

    def run(self):
        """Execute every pending stage in order, persisting a flag after each"""
        self.state.load()
        self._check_state_matches_config()

        gaps = self.state.order_gaps()
        if gaps:
            logger.warning(
                "Installation state has stages marked complete out of order; "
                f"pending earlier stages: {', '.join(stage.name for stage in gaps)}"
            )

        if self.state.is_done(Stage.INSTALLATION_COMPLETE):
            logger.info("Installation already completed. Use --reset to start over.")
            return

        if self.state.completed():
            self.restore_environment()

        for stage in Stage:
            if self.state.is_done(stage):
                logger.info(f"Skipping {stage.action}: already completed")
                continue
            logger.info(f"==> {stage.action}")
            getattr(self, stage.action)()
            self.state.mark_done(stage)

        success(logger, "Installation complete!")

    def _check_state_matches_config(self):
        recorded = self.state.get("DISK")
        if recorded and self.state.completed() and recorded != self.config.disk:
            raise InstallerError(
                "E045",
                f"saved state belongs to {recorded}, not {self.config.disk}; use --reset or --restart",
            )

    def plan(self):
        """(stage, action, done) for every stage"""
        self.state.load()
        return [(stage, stage.action, self.state.is_done(stage)) for stage in Stage]

    def print_plan(self):
        summary = Table(title="Resolved configuration", show_header=False)
        for label, value in self.config.summary():
            summary.add_row(label, str(value))
        summary.add_row("Release codename", self.codename)
        mirror = self.base_system.mirror_selector.select(self.config.mirror, self.codename)
        summary.add_row("Resolved mirror", mirror.url)
        console.print(summary)

        stages = Table(title="Planned stages")
        stages.add_column("#", justify="right")
        stages.add_column("Stage")
        stages.add_column("Status")
        for stage, action, done in self.plan():
            stages.add_row(str(stage.value), action, "skip (completed)" if done else "run")
        console.print(stages)

    def restore_environment(self):
        """Rebuild what a previous run left mounted so pending stages can continue"""
        config = self.config
        logger.info("Resuming installation, restoring the installation environment...")
        self.layout = self.disk_manager.layout_for(config.disk, config.swap_enabled)
        logger.info(f"Partitions: EFI={self.layout.efi}, Swap={self.layout.swap or 'none'}, ZFS={self.layout.zfs}")

        if not self.state.is_done(Stage.ZFS_CREATED):
            return

        self.zfs_manager.ensure_key_file(config)
        if not self.zfs_manager.pool_imported(config.pool_name):
            self.zfs_manager.import_pool(config)
        self.zfs_manager.mount_root_dataset(config)
        self.zfs_manager.mount_datasets()

        efi_dir = os.path.join(config.root_mount, "boot/efi")
        if not self.runner.is_mountpoint(efi_dir):
            self.zfs_manager.mount_esp(config, self.layout.efi)

        if self.state.is_done(Stage.BASE_INSTALLED):
            self.base_system.mount_chroot_filesystems(config.root_mount)

    def restart(self):
        """Tear down anything a previous attempt left behind and clear the state"""
        config = self.config
        logger.warning("Restarting installation: cleaning up the previous attempt...")
        if not self.runner.run(["umount", "-lR", config.root_mount], check=False).ok:
            logger.debug(f"Nothing mounted at {config.root_mount}")
        self.disk_manager.disable_swap(config.disk)
        self.zfs_manager.export_pool(config.pool_name, force_only=True)
        self.state.reset()

    # Stages

    def prepare_disk(self):
        self.layout = self.disk_manager.prepare_disk(self.config)
        self.state.save("DISK", self.config.disk)
        self.state.save("EFI_PARTITION", self.layout.efi)
        if self.layout.swap:
            self.state.save("SWAP_PARTITION", self.layout.swap)
        self.state.save("ZFS_PARTITION", self.layout.zfs)

    def create_zfs_pool(self):
        self.zfs_manager.create_pool(self.config, self.layout.zfs)
        self.zfs_manager.create_datasets(self.config)
        self.zfs_manager.mount_esp(self.config, self.layout.efi)

    def install_base_system(self):
        mirror = self.base_system.install(self.config, self.codename, self.os_release)
        self.state.save("MIRROR", mirror)

    def configure_system(self):
        self.system_config.configure_system(self.config, self.layout)

    def install_zectl(self):
        self.be_manager.install()
        self.be_manager.verify()
        self.be_manager.initial_snapshot()
        self.be_manager.install_apt_hooks(self.config.root_mount)

    def install_systemd_boot(self):
        self.boot_manager.install(self.config)

    def finalize_installation(self):
        config = self.config
        logger.info("Finalizing installation...")
        self.system_config.configure_users(config)
        self.system_config.enable_services(config)
        self.boot_manager.install_kernel_sync_hook(config)

        logger.info("Regenerating initramfs for all kernels...")
        try:
            self.runner.chroot(config.root_mount, ["update-initramfs", "-u", "-k", "all"])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E070", f"update-initramfs: exit {e.returncode}")
        self.boot_manager.sync_kernels(config)

        self.run_post_install_script()

        logger.info("Cleaning up installation environment...")
        self.base_system.unmount_chroot_filesystems(config.root_mount)
        self.zfs_manager.export_pool(config.pool_name)

    def run_post_install_script(self):
        script = self.config.post_install_script
        if not script:
            return
        logger.info(f"Running post-install script {script}...")
        target = os.path.join(self.config.root_mount, POST_INSTALL_TARGET)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            shutil.copy(script, target)
            os.chmod(target, 0o755)
        except OSError as e:
            logger.warning(f"Could not copy post-install script into the target: {e}")
            return

        result = self.runner.chroot(self.config.root_mount, [f"/{POST_INSTALL_TARGET}"], check=False)
        if not result.ok:
            logger.warning(f"Post-install script exited with {result.rc}")
        try:
            os.remove(target)
        except OSError as e:
            logger.debug(f"Could not remove {target}: {e}")
