#!/usr/bin/env python3
# ZFS Manager Module
# Handles ZFS pool and dataset operations

import logging
import os
import subprocess

from .errors import InstallerError

logger = logging.getLogger(__name__)

KEY_DIR = "/etc/zfs"

# (dataset suffix, properties); created after ROOT, failures only degrade snapshot granularity
AUXILIARY_DATASETS = [
    ("home", ["canmount=on", "mountpoint=/home"]),
    ("var", ["canmount=off", "mountpoint=/var"]),
    ("var/lib", ["canmount=on"]),
    ("var/log", ["canmount=on"]),
    ("var/cache", ["canmount=on"]),
    ("var/tmp", ["canmount=on"]),
]


def key_file_path(pool_name, key_dir=KEY_DIR):
    return os.path.join(key_dir, f"{pool_name}.key")


def pool_options(config, key_location=None):
    """Build the zpool create option list for a configuration"""
    opts = [
        "-o", f"ashift={config.zfs_ashift}",
        "-o", "autotrim=on",
        "-O", "acltype=posixacl",
        "-O", "canmount=off",
        "-O", f"compression={config.zfs_compression}",
        "-O", "dnodesize=auto",
        "-O", "normalization=formD",
        "-O", f"atime={config.zfs_atime}",
        "-O", "xattr=sa",
        "-O", "mountpoint=/",
        "-R", config.root_mount,
    ]
    if config.zfs_atime == "on":
        opts.extend(["-O", "relatime=on"])
    if config.zfs_recordsize:
        opts.extend(["-O", f"recordsize={config.zfs_recordsize}"])
    if config.encryption:
        opts.extend([
            "-O", "encryption=aes-256-gcm",
            "-O", f"keylocation={key_location or 'prompt'}",
            "-O", "keyformat=passphrase",
        ])
    return opts


class ZFSManager:
    def __init__(self, runner, key_dir=KEY_DIR):
        self.runner = runner
        self.key_dir = key_dir
        self.datasets = {}

    def _write_key_file(self, config):
        """Write the passphrase to the pool key file, readable by root only"""
        path = key_file_path(config.pool_name, self.key_dir)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(config.passphrase)
        os.chmod(path, 0o600)
        return path

    def ensure_key_file(self, config):
        """Recreate the key file from the configured passphrase when the live system lost it"""
        if not (config.encryption and config.key_delivery == "keyfile"):
            return None
        path = key_file_path(config.pool_name, self.key_dir)
        if os.path.exists(path):
            return path
        logger.info(f"Key file {path} is missing, writing it again")
        try:
            return self._write_key_file(config)
        except OSError as e:
            raise InstallerError("E024", f"writing key file {path}: {e}")

    def create_pool(self, config, zfs_partition):
        """Create the ZFS pool with the fixed property set"""
        logger.info(f"Creating ZFS pool '{config.pool_name}' on {zfs_partition}...")

        if not self.runner.is_block_device(zfs_partition):
            raise InstallerError("E015", f"ZFS partition {zfs_partition} not found")

        key_location = None
        stdin = None
        if config.encryption:
            if not config.passphrase:
                raise InstallerError("E044", "encryption enabled but no passphrase provided")
            if config.key_delivery == "keyfile":
                key_location = "file://" + self._write_key_file(config)
            else:
                # keylocation=prompt reads the passphrase from stdin when it is not a tty
                stdin = config.passphrase + "\n"

        cmd = ["zpool", "create", "-f"] + pool_options(config, key_location) + [config.pool_name, zfs_partition]
        try:
            self.runner.run(cmd, input=stdin)
        except subprocess.CalledProcessError as e:
            raise InstallerError("E020", f"zpool create {config.pool_name}: exit {e.returncode}")

        logger.info(f"ZFS pool '{config.pool_name}' created successfully.")

    def _create_dataset(self, name, *properties):
        """Create a ZFS dataset with the given properties"""
        cmd = ["zfs", "create"]
        for prop in properties:
            cmd.extend(["-o", prop])
        cmd.append(name)
        self.runner.run(cmd)

    def create_datasets(self, config):
        """Create the ROOT container, the boot dataset and auxiliary datasets"""
        logger.info("Creating ZFS datasets...")
        pool = config.pool_name
        root_ds = config.root_dataset

        try:
            self._create_dataset(f"{pool}/ROOT", "canmount=off", "mountpoint=none")
            self._create_dataset(root_ds, "canmount=noauto", "mountpoint=/")
        except subprocess.CalledProcessError as e:
            raise InstallerError("E021", f"{e.cmd[-1]}: exit {e.returncode}")

        try:
            self.runner.run(["zpool", "set", f"bootfs={root_ds}", pool])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E023", f"bootfs={root_ds}: exit {e.returncode}")

        self.mount_root_dataset(config)

        created = {'root': root_ds}
        for suffix, properties in AUXILIARY_DATASETS:
            name = f"{pool}/{suffix}"
            try:
                self._create_dataset(name, *properties)
                created[suffix] = name
            except subprocess.CalledProcessError as e:
                logger.warning(f"Could not create dataset {name} (exit {e.returncode}), continuing without it")

        self.datasets = created
        logger.info("ZFS datasets created successfully.")
        return created

    def mount_root_dataset(self, config):
        """Mount the boot dataset at the staging root; children mount below it"""
        if self.dataset_mounted(config.root_dataset):
            return
        try:
            self.runner.run(["zfs", "mount", config.root_dataset])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E022", f"{config.root_dataset}: exit {e.returncode}")

    def mount_datasets(self):
        result = self.runner.run(["zfs", "mount", "-a"], check=False)
        if not result.ok:
            logger.warning(f"Some datasets could not be mounted: {result.err.strip()}")

    def mount_esp(self, config, efi_partition):
        """Mount the ESP below the staging root"""
        efi_dir = os.path.join(config.root_mount, "boot/efi")
        os.makedirs(efi_dir, exist_ok=True)
        try:
            self.runner.run(["mount", efi_partition, efi_dir])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E052", f"{efi_partition} -> {efi_dir}: exit {e.returncode}")

    def pool_imported(self, pool_name):
        return self.runner.run(["zpool", "list", "-H", "-o", "name", pool_name], check=False, readonly=True).ok

    def dataset_mounted(self, dataset):
        result = self.runner.run(["zfs", "get", "-H", "-o", "value", "mounted", dataset], check=False, readonly=True)
        return result.ok and result.out.strip() == "yes"

    def import_pool(self, config):
        """Import the pool under the staging root and load its key if needed"""
        logger.info(f"Importing ZFS pool '{config.pool_name}'...")
        self.ensure_key_file(config)
        try:
            self.runner.run(["zpool", "import", "-N", "-f", "-R", config.root_mount, config.pool_name])
            if config.encryption:
                if config.key_delivery == "keyfile":
                    self.runner.run(["zfs", "load-key", config.pool_name])
                else:
                    self.runner.run(["zfs", "load-key", config.pool_name], input=config.passphrase + "\n")
        except subprocess.CalledProcessError as e:
            raise InstallerError("E024", f"{' '.join(e.cmd[:3])} {config.pool_name}: exit {e.returncode}")

    def set_cachefile(self, pool_name, cachefile="/etc/zfs/zpool.cache"):
        result = self.runner.run(["zpool", "set", f"cachefile={cachefile}", pool_name], check=False)
        if not result.ok:
            logger.warning(f"Could not set cachefile on {pool_name}: {result.err.strip()}")
        return result.ok

    def generate_hostid(self):
        """Generate a hostid for ZFS if the live system has none"""
        if os.path.exists("/etc/hostid"):
            return True
        logger.info("Generating ZFS hostid...")
        result = self.runner.run(["zgenhostid"], check=False)
        if not result.ok:
            logger.warning(f"Failed to generate hostid: {result.err.strip()}")
        return result.ok

    def export_pool(self, pool_name, force_only=False):
        """Export the pool, forcing the export if a clean one fails"""
        if not self.pool_imported(pool_name):
            logger.debug(f"Pool {pool_name} is not imported, nothing to export")
            return True

        if not force_only:
            if self.runner.run(["zpool", "export", pool_name], check=False).ok:
                logger.info(f"ZFS pool '{pool_name}' exported successfully.")
                return True
            logger.warning("Failed to export ZFS pool cleanly, forcing export")

        result = self.runner.run(["zpool", "export", "-f", pool_name], check=False)
        if not result.ok:
            raise InstallerError("E072", f"zpool export -f {pool_name}: {result.err.strip()}")
        logger.info(f"ZFS pool '{pool_name}' force-exported.")
        return True
