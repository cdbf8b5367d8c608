#!/usr/bin/env python3
# System Configuration Module
# Handles system configuration tasks inside the staging root

import logging
import os
import shutil
import subprocess

from .errors import InstallerError
from .zfs_manager import key_file_path

logger = logging.getLogger(__name__)

USER_GROUPS = ["sudo", "adm", "cdrom", "dip", "plugdev"]
SUDO_TIMEOUT_MINUTES = 15
TEMPORARY_PASSWORD = "changeme"

BASE_SERVICES = ["systemd-resolved", "systemd-timesyncd", "zfs-import-cache", "zfs-mount", "zfs.target"]
INSTALL_TYPE_SERVICES = {
    "desktop": ["NetworkManager"],
    "server": ["ssh"],
    "minimal": ["ssh"],
}


def hosts_file(hostname):
    return (
        "127.0.0.1   localhost\n"
        f"127.0.1.1   {hostname}\n"
        "\n"
        "# IPv6\n"
        "::1     localhost ip6-localhost ip6-loopback\n"
        "ff02::1 ip6-allnodes\n"
        "ff02::2 ip6-allrouters\n"
    )


def sudoers_rule(username, timeout=SUDO_TIMEOUT_MINUTES):
    """Password-required sudo with a bounded credential cache"""
    return (
        f"{username} ALL=(ALL:ALL) PASSWD:ALL\n"
        f"Defaults:{username} timestamp_timeout={timeout}\n"
    )


def user_groups(install_type):
    groups = list(USER_GROUPS)
    if install_type == "desktop":
        groups.append("lpadmin")
    return groups


class SystemConfig:
    def __init__(self, runner, zfs_manager):
        self.runner = runner
        self.zfs_manager = zfs_manager

    def _target(self, config, *parts):
        return os.path.join(config.root_mount, *parts)

    def _chroot(self, config, cmd, **kwargs):
        return self.runner.chroot(config.root_mount, cmd, **kwargs)

    def configure_system(self, config, layout):
        """Configure fstab, hostname, timezone, locale and ZFS host files"""
        logger.info("Configuring system...")
        self.write_fstab(config, layout)
        self.configure_hostname(config)
        self.configure_timezone(config)
        self.configure_locale(config)
        self.configure_machine_id(config)
        self.configure_zfs_host_files(config)
        logger.info("System configuration completed.")

    def _uuid(self, device):
        result = self.runner.run(["blkid", "-s", "UUID", "-o", "value", device], check=False)
        return result.out.strip() if result.ok else ""

    def write_fstab(self, config, layout):
        """ZFS datasets mount themselves; fstab only carries the ESP and swap"""
        lines = [
            "# /etc/fstab: static file system information.",
            "# ZFS filesystems are mounted by ZFS, not fstab",
        ]
        efi_uuid = self._uuid(layout.efi)
        if efi_uuid:
            lines.append(f"UUID={efi_uuid} /boot/efi vfat umask=0077 0 1")
        else:
            logger.warning(f"No UUID found for {layout.efi}, using the device path in fstab")
            lines.append(f"{layout.efi} /boot/efi vfat umask=0077 0 1")

        if layout.swap:
            swap_uuid = self._uuid(layout.swap)
            lines.append(f"{'UUID=' + swap_uuid if swap_uuid else layout.swap} none swap sw 0 0")

        try:
            with open(self._target(config, "etc/fstab"), "w") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            raise InstallerError("E070", f"fstab: {e}")

    def configure_hostname(self, config):
        try:
            with open(self._target(config, "etc/hostname"), "w") as f:
                f.write(f"{config.hostname}\n")
            with open(self._target(config, "etc/hosts"), "w") as f:
                f.write(hosts_file(config.hostname))
        except OSError as e:
            raise InstallerError("E042", str(e))
        logger.info(f"Hostname set to {config.hostname}.")

    def configure_timezone(self, config):
        try:
            self._chroot(config, ["ln", "-sf", f"/usr/share/zoneinfo/{config.timezone}", "/etc/localtime"])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E041", f"{config.timezone}: exit {e.returncode}")
        try:
            with open(self._target(config, "etc/timezone"), "w") as f:
                f.write(f"{config.timezone}\n")
        except OSError as e:
            logger.warning(f"Could not write /etc/timezone: {e}")

        result = self._chroot(config, ["dpkg-reconfigure", "-f", "noninteractive", "tzdata"], check=False)
        if not result.ok:
            logger.warning("Failed to reconfigure tzdata")

    def configure_locale(self, config):
        """Enable the configured locale in locale.gen and generate it"""
        path = self._target(config, "etc/locale.gen")
        entry = f"{config.locale} UTF-8"
        try:
            lines = []
            if os.path.exists(path):
                with open(path, "r") as f:
                    lines = f.readlines()

            found = False
            for i, line in enumerate(lines):
                if line.lstrip("# ").strip() == entry:
                    lines[i] = entry + "\n"
                    found = True
            if not found:
                lines.append(entry + "\n")

            with open(path, "w") as f:
                f.writelines(lines)
            with open(self._target(config, "etc/locale.conf"), "w") as f:
                f.write(f"LANG={config.locale}\n")
        except OSError as e:
            raise InstallerError("E040", str(e))

        if not self._chroot(config, ["locale-gen"], check=False).ok:
            logger.warning("Failed to generate locales")
        if not self._chroot(config, ["update-locale", f"LANG={config.locale}"], check=False).ok:
            logger.warning("Failed to update locale")

    def configure_machine_id(self, config):
        if not self._chroot(config, ["systemd-machine-id-setup"], check=False).ok:
            logger.warning("Failed to setup machine-id")

    def configure_zfs_host_files(self, config):
        """Give the target the live hostid, the pool cache file and the key file"""
        zfs_dir = self._target(config, "etc/zfs")
        os.makedirs(zfs_dir, exist_ok=True)

        self.zfs_manager.generate_hostid()
        try:
            shutil.copy("/etc/hostid", self._target(config, "etc/hostid"))
        except OSError as e:
            logger.warning(f"Could not copy /etc/hostid into the target: {e}")

        if self.zfs_manager.set_cachefile(config.pool_name):
            try:
                shutil.copy("/etc/zfs/zpool.cache", os.path.join(zfs_dir, "zpool.cache"))
            except OSError as e:
                logger.warning(f"Could not copy zpool.cache into the target: {e}")

        if config.encryption and config.key_delivery == "keyfile":
            source = key_file_path(config.pool_name, self.zfs_manager.key_dir)
            target = key_file_path(config.pool_name, zfs_dir)
            try:
                shutil.copy(source, target)
                os.chmod(target, 0o600)
            except OSError as e:
                raise InstallerError("E024", f"copying key file into the target: {e}")

    def user_exists(self, config):
        return self._chroot(config, ["id", "-u", config.username], check=False).ok

    def _set_password(self, config, account, password):
        try:
            self._chroot(config, ["chpasswd"], input=f"{account}:{password}\n")
        except subprocess.CalledProcessError as e:
            raise InstallerError("E044", f"chpasswd {account}: exit {e.returncode}")

    def configure_users(self, config):
        """Create the primary user, set passwords and install the sudo rule"""
        logger.info(f"Creating user {config.username}...")
        if self.user_exists(config):
            logger.info(f"User {config.username} already exists.")
        else:
            groups = ",".join(user_groups(config.install_type))
            try:
                self._chroot(config, ["useradd", "-m", "-G", groups, "-s", "/bin/bash", config.username])
            except subprocess.CalledProcessError as e:
                raise InstallerError("E043", f"useradd {config.username}: exit {e.returncode}")

        if config.user_password:
            self._set_password(config, config.username, config.user_password)
        else:
            logger.warning(
                f"No password provided for {config.username}; setting temporary password "
                f"'{TEMPORARY_PASSWORD}' that must be changed at first login"
            )
            self._set_password(config, config.username, TEMPORARY_PASSWORD)
            self._chroot(config, ["chage", "-d", "0", config.username], check=False)

        if config.root_password:
            self._set_password(config, "root", config.root_password)
        else:
            logger.info("No root password set, locking the root account.")
            self._chroot(config, ["passwd", "-l", "root"], check=False)

        self.install_sudoers(config)

    def install_sudoers(self, config):
        """Validate the sudoers rule under a name sudo ignores, then move it into place"""
        sudoers_dir = self._target(config, "etc/sudoers.d")
        os.makedirs(sudoers_dir, exist_ok=True)
        # sudo skips sudoers.d entries whose name contains a dot
        pending = os.path.join(sudoers_dir, f".{config.username}.new")
        path = os.path.join(sudoers_dir, config.username)
        try:
            with open(pending, "w") as f:
                f.write(sudoers_rule(config.username))
            os.chmod(pending, 0o440)
        except OSError as e:
            raise InstallerError("E043", f"sudoers rule: {e}")

        check = self._chroot(config, ["visudo", "-cf", f"/etc/sudoers.d/.{config.username}.new"], check=False)
        if not check.ok:
            os.remove(pending)
            raise InstallerError("E043", f"visudo rejected the sudoers rule: {check.err.strip()}")
        try:
            os.replace(pending, path)
        except OSError as e:
            raise InstallerError("E043", f"sudoers rule: {e}")

    def enable_services(self, config):
        services = BASE_SERVICES + INSTALL_TYPE_SERVICES.get(config.install_type, [])
        for service in services:
            if not self._chroot(config, ["systemctl", "enable", service], check=False).ok:
                logger.warning(f"Failed to enable {service}")
