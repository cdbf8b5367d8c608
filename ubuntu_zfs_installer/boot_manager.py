#!/usr/bin/env python3
# Boot Manager Module
# Handles systemd-boot installation and configuration

import logging
import os
import re
import shutil
import subprocess

from .errors import InstallerError

logger = logging.getLogger(__name__)

ESP_PATH = "boot/efi"
ENTRY_NAME = "ubuntu"

LOADER_CONF = """\
default ubuntu
timeout 5
console-mode max
editor no
"""

KERNEL_SYNC_HOOK_PATH = "etc/apt/apt.conf.d/99-sync-kernels-to-esp"
KERNEL_SYNC_SCRIPT_PATH = "usr/local/bin/sync-kernels-to-esp"

KERNEL_SYNC_HOOK = """\
# Automatically sync kernel and initrd to ESP after apt operations
DPkg::Post-Invoke {
    "if [ -d /boot/efi ] && [ -x /usr/local/bin/sync-kernels-to-esp ]; then /usr/local/bin/sync-kernels-to-esp; fi";
};
"""

KERNEL_SYNC_SCRIPT = """\
#!/bin/bash
# Sync latest kernel and initrd to ESP for systemd-boot
set -euo pipefail

ESP="/boot/efi"

log_message() {
    logger -p local0.info -t "kernel-sync" "$1" 2>/dev/null || true
    echo "[$(date)] $1" >&2
}

if ! mountpoint -q "$ESP"; then
    log_message "ESP not mounted at $ESP, skipping kernel sync"
    exit 0
fi

KERNEL_VERSION=$(ls -1 /boot/vmlinuz-* 2>/dev/null | sed "s#.*/vmlinuz-##" | sort -V | tail -1)
if [[ -z "$KERNEL_VERSION" ]]; then
    log_message "No kernel found in /boot"
    exit 1
fi

log_message "Syncing kernel $KERNEL_VERSION to ESP"
cp "/boot/vmlinuz-$KERNEL_VERSION" "$ESP/"
if [[ -f "/boot/initrd.img-$KERNEL_VERSION" ]]; then
    cp "/boot/initrd.img-$KERNEL_VERSION" "$ESP/"
fi

ENTRY="$ESP/loader/entries/ubuntu.conf"
if [[ -f "$ENTRY" ]]; then
    sed -i "s/vmlinuz-.*/vmlinuz-$KERNEL_VERSION/" "$ENTRY"
    sed -i "s/initrd.img-.*/initrd.img-$KERNEL_VERSION/" "$ENTRY"
    log_message "Updated systemd-boot entry for kernel $KERNEL_VERSION"
fi
"""


def version_key(version):
    """Sort key that orders kernel versions like `sort -V`"""
    return [(0, int(part), "") if part.isdigit() else (1, 0, part)
            for part in re.findall(r"\d+|[^\d.\-+~]+", version)]


def latest_kernel_version(filenames):
    """Pick the highest vmlinuz-<version> among `filenames`"""
    versions = [name[len("vmlinuz-"):] for name in filenames if name.startswith("vmlinuz-")]
    if not versions:
        return None
    return max(versions, key=version_key)


def boot_entry(root_dataset, kernel_version):
    return (
        "title   Ubuntu Linux\n"
        f"linux   /vmlinuz-{kernel_version}\n"
        f"initrd  /initrd.img-{kernel_version}\n"
        f"options root=ZFS={root_dataset} rw quiet splash\n"
    )


class BootManager:
    def __init__(self, runner):
        self.runner = runner
        self.kernel_version = None

    def _esp(self, config, *parts):
        return os.path.join(config.root_mount, ESP_PATH, *parts)

    def install(self, config):
        """Install systemd-boot, its configuration and the boot entry"""
        logger.info("Installing systemd-boot...")
        self.install_bootloader(config)
        self.write_loader_conf(config)
        version = self.find_kernel(config)
        self.write_boot_entry(config, version)
        self.copy_kernel_to_esp(config, version)
        logger.info("systemd-boot installed successfully.")
        return version

    def install_bootloader(self, config):
        try:
            self.runner.chroot(config.root_mount, ["bootctl", f"--esp-path=/{ESP_PATH}", "install"])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E050", f"bootctl install: exit {e.returncode}")

    def write_loader_conf(self, config):
        try:
            os.makedirs(self._esp(config, "loader/entries"), exist_ok=True)
            with open(self._esp(config, "loader/loader.conf"), "w") as f:
                f.write(LOADER_CONF)
        except OSError as e:
            raise InstallerError("E051", f"loader.conf: {e}")

    def find_kernel(self, config):
        boot_dir = os.path.join(config.root_mount, "boot")
        try:
            names = os.listdir(boot_dir)
        except OSError:
            names = []
        version = latest_kernel_version(names)
        if not version:
            raise InstallerError("E053", f"no vmlinuz-* found in {boot_dir}")
        logger.info(f"Using kernel version: {version}")
        self.kernel_version = version
        return version

    def write_boot_entry(self, config, kernel_version):
        path = self._esp(config, "loader/entries", f"{ENTRY_NAME}.conf")
        try:
            with open(path, "w") as f:
                f.write(boot_entry(config.root_dataset, kernel_version))
        except OSError as e:
            raise InstallerError("E051", f"{path}: {e}")

    def copy_kernel_to_esp(self, config, kernel_version):
        logger.info("Copying kernel and initrd to ESP...")
        boot_dir = os.path.join(config.root_mount, "boot")
        for name in (f"vmlinuz-{kernel_version}", f"initrd.img-{kernel_version}"):
            try:
                shutil.copy(os.path.join(boot_dir, name), self._esp(config))
            except OSError as e:
                raise InstallerError("E053", f"{name}: {e}")

    def install_kernel_sync_hook(self, config):
        """Keep the ESP copies current after future kernel upgrades"""
        logger.info("Setting up automatic kernel sync to ESP...")
        hook = os.path.join(config.root_mount, KERNEL_SYNC_HOOK_PATH)
        script = os.path.join(config.root_mount, KERNEL_SYNC_SCRIPT_PATH)
        try:
            os.makedirs(os.path.dirname(hook), exist_ok=True)
            os.makedirs(os.path.dirname(script), exist_ok=True)
            with open(hook, "w") as f:
                f.write(KERNEL_SYNC_HOOK)
            with open(script, "w") as f:
                f.write(KERNEL_SYNC_SCRIPT)
            os.chmod(script, 0o755)
        except OSError as e:
            raise InstallerError("E070", f"kernel sync hook: {e}")

    def sync_kernels(self, config):
        """Run the sync script once so the ESP matches the regenerated initramfs"""
        result = self.runner.chroot(config.root_mount, [f"/{KERNEL_SYNC_SCRIPT_PATH}"], check=False)
        if not result.ok:
            logger.warning("Initial kernel sync to the ESP failed")
