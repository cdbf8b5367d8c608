#!/usr/bin/env python3
# Preflight Module
# Host requirement checks run before any stage

import logging
import os

from .base_system import read_os_release
from .errors import InstallerError

logger = logging.getLogger(__name__)

HOST_PACKAGES = ["debootstrap", "gdisk", "zfsutils-linux", "efibootmgr", "dosfstools", "curl", "rsync"]
EFI_DIR = "/sys/firmware/efi"
OS_RELEASE = "/etc/os-release"
PROC_MODULES = "/proc/modules"


def is_ubuntu(os_release):
    ids = [os_release.get("ID", "")] + os_release.get("ID_LIKE", "").split()
    return "ubuntu" in ids


class Preflight:
    def __init__(self, runner, efi_dir=EFI_DIR, os_release_path=OS_RELEASE, proc_modules=PROC_MODULES, geteuid=None):
        self.runner = runner
        self.efi_dir = efi_dir
        self.os_release_path = os_release_path
        self.proc_modules = proc_modules
        self.geteuid = geteuid or os.geteuid

    def run(self, ubuntu_version=""):
        """Run every host check; returns (target version, os-release values)"""
        logger.info("Checking system requirements...")
        self.check_root()
        self.check_uefi()
        version, os_release = self.detect_version(ubuntu_version)
        self.install_dependencies()
        self.load_zfs_module()
        logger.info("System requirements satisfied.")
        return version, os_release

    def check_root(self):
        if self.geteuid() != 0:
            raise InstallerError("E001", "run the installer with sudo or as root")

    def check_uefi(self):
        if not os.path.isdir(self.efi_dir):
            raise InstallerError("E002", f"{self.efi_dir} does not exist")
        efivars = os.path.join(self.efi_dir, "efivars")
        if not os.path.isdir(efivars) or not os.listdir(efivars):
            raise InstallerError("E003", f"{efivars} is empty or missing")

    def detect_version(self, ubuntu_version="", strict=True):
        """Target release defaults to the running one; strict requires an Ubuntu host"""
        os_release = read_os_release(self.os_release_path)
        if strict and not is_ubuntu(os_release):
            raise InstallerError("E004", f"running {os_release.get('PRETTY_NAME', 'an unknown system')}")
        version = ubuntu_version or os_release.get("VERSION_ID", "")
        if not version:
            raise InstallerError("E004", "could not determine the Ubuntu version")
        logger.info(f"Target Ubuntu version: {version}")
        return version, os_release

    def package_installed(self, package):
        result = self.runner.run(["dpkg", "-s", package], check=False, readonly=True)
        return result.ok and "Status: install ok installed" in result.out

    def install_dependencies(self, attempts=3, delay=5):
        """Install missing host tools; apt-get update is retried with a fixed backoff"""
        missing = [pkg for pkg in HOST_PACKAGES if not self.package_installed(pkg)]
        if not missing:
            return
        logger.info(f"Installing required packages: {' '.join(missing)}")

        for attempt in range(1, attempts + 1):
            if self.runner.run(["apt-get", "update"], check=False).ok:
                break
            if attempt < attempts:
                logger.warning(f"apt-get update failed, retrying in {delay} seconds")
                self.runner.sleep(delay)
        else:
            logger.warning("apt-get update failed, trying to install with cached metadata")

        env = {"DEBIAN_FRONTEND": "noninteractive"}
        if not self.runner.run(["apt-get", "install", "-y"] + missing, check=False, env=env).ok:
            still_missing = [pkg for pkg in missing if not self.package_installed(pkg)]
            if still_missing:
                raise InstallerError("E005", " ".join(still_missing))
            logger.warning("apt-get reported errors but all required packages are installed")

    def zfs_module_loaded(self):
        try:
            with open(self.proc_modules, "r") as f:
                return any(line.split(" ", 1)[0] == "zfs" for line in f)
        except OSError:
            return False

    def load_zfs_module(self):
        if self.zfs_module_loaded():
            return
        logger.info("Loading ZFS kernel module...")
        if not self.runner.run(["modprobe", "zfs"], check=False).ok:
            raise InstallerError("E006", "modprobe zfs failed")
