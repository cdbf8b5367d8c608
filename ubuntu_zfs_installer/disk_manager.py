#!/usr/bin/env python3
# Disk Manager Module
# Handles disk selection, wiping, partitioning and formatting

import logging
import re
import subprocess
from dataclasses import dataclass
from enum import Enum

from .errors import InstallerError

logger = logging.getLogger(__name__)

P_INFIX_RE = re.compile(r"(nvme\d+n\d+|mmcblk\d+|loop\d+)$")
NUMERIC_SUFFIX_RE = re.compile(r"(sd[a-z]+|hd[a-z]+|vd[a-z]+|xvd[a-z]+)$")

LIVE_MOUNTPOINTS = ("/", "/cdrom", "/run/live/medium", "/media/cdrom")

EFI_SIZE = "+1G"
PARTITION_TIMEOUT = 10


class DiskState(Enum):
    UNPREPARED = "unprepared"
    UNMOUNTED = "unmounted"
    WIPED = "wiped"
    PARTITIONED = "partitioned"
    FORMATTED = "formatted"
    READY = "ready"


@dataclass(frozen=True)
class PartitionLayout:
    efi: str
    zfs: str
    swap: str = None

    def as_dict(self):
        return {"efi": self.efi, "swap": self.swap, "zfs": self.zfs}


def get_partition_name(disk, number, is_block_device=None):
    """Derive the device path of partition `number` on `disk`.

    NVMe, MMC and loop devices use a "p" infix (/dev/nvme0n1p1); SCSI,
    virtio, IDE and Xen disks use a bare suffix (/dev/sda1). For anything
    else, whichever convention already exists as a block device wins, with
    the "p" form as the default.
    """
    if P_INFIX_RE.search(disk):
        return f"{disk}p{number}"
    if NUMERIC_SUFFIX_RE.search(disk):
        return f"{disk}{number}"

    p_format = f"{disk}p{number}"
    direct_format = f"{disk}{number}"
    if is_block_device is not None:
        if is_block_device(p_format):
            return p_format
        if is_block_device(direct_format):
            return direct_format
    return p_format


def partition_layout(disk, swap_enabled, is_block_device=None):
    """Partition numbering: 1 = EFI, 2 = swap (if any), last = ZFS"""
    efi = get_partition_name(disk, 1, is_block_device)
    if swap_enabled:
        swap = get_partition_name(disk, 2, is_block_device)
        zfs = get_partition_name(disk, 3, is_block_device)
    else:
        swap = None
        zfs = get_partition_name(disk, 2, is_block_device)
    return PartitionLayout(efi=efi, zfs=zfs, swap=swap)


def base_device(device):
    """Strip a partition suffix: /dev/nvme0n1p3 -> /dev/nvme0n1, /dev/sda1 -> /dev/sda"""
    match = re.match(r"^(.*\d)p\d+$", device)
    if match:
        return match.group(1)
    match = re.match(r"^(/dev/(?:sd|hd|vd|xvd)[a-z]+)\d+$", device)
    if match:
        return match.group(1)
    return device


class DiskManager:
    def __init__(self, runner, prompter=None, interactive=False):
        self.runner = runner
        self.prompter = prompter
        self.interactive = interactive
        self.state = DiskState.UNPREPARED
        self.partitions = None

    def _advance(self, state):
        self.state = state
        logger.debug(f"Disk state: {state.name}")

    def get_available_disks(self):
        """Get a list of whole disks using lsblk"""
        result = self.runner.run(["lsblk", "-dpno", "NAME,SIZE,MODEL", "-e", "7,11"], check=False, readonly=True)
        if not result.ok:
            logger.warning(f"Error getting disk list: {result.err.strip()}")
            return []

        disks = []
        for line in result.out.splitlines():
            parts = line.strip().split(maxsplit=2)
            if len(parts) >= 2:
                disks.append({
                    'path': parts[0],
                    'size': parts[1],
                    'model': parts[2] if len(parts) > 2 else ""
                })
        return disks

    def live_media_sources(self):
        """Devices backing the running live system"""
        sources = []
        for mountpoint in LIVE_MOUNTPOINTS:
            result = self.runner.run(["findmnt", "-no", "SOURCE", mountpoint], check=False, readonly=True)
            source = result.out.strip()
            if result.ok and source.startswith("/dev/"):
                sources.append(source)
        return sources

    def guard_not_installation_media(self, disk):
        for source in self.live_media_sources():
            if base_device(source) == disk:
                raise InstallerError("E082", f"{disk} holds {source}, which backs the running live system")

    def layout_for(self, disk, swap_enabled):
        """Re-derive partition paths for a disk prepared by an earlier run"""
        self.partitions = partition_layout(disk, swap_enabled, self.runner.is_block_device)
        return self.partitions

    def unmount_disk(self, disk):
        """Unmount everything on the disk, deepest mountpoint first"""
        result = self.runner.run(["findmnt", "-rn", "-o", "SOURCE,TARGET"], check=False, readonly=True)
        targets = []
        for line in result.out.splitlines():
            parts = line.split(maxsplit=1)
            if len(parts) == 2 and (parts[0] == disk or base_device(parts[0]) == disk):
                targets.append(parts[1])

        for target in sorted(targets, reverse=True):
            if not self.runner.run(["umount", target], check=False).ok:
                logger.warning(f"Failed to unmount {target}, trying lazy unmount")
                self.runner.run(["umount", "-l", target], check=False)

    def disable_swap(self, disk):
        result = self.runner.run(["swapon", "--show=NAME", "--noheadings"], check=False, readonly=True)
        for device in result.out.split():
            if device == disk or base_device(device) == disk:
                if not self.runner.run(["swapoff", device], check=False).ok:
                    logger.warning(f"Failed to disable swap on {device}")

    def wipe_disk(self, disk):
        logger.info("Wiping disk signatures...")
        try:
            self.runner.run(["wipefs", "-af", disk])
            self.runner.run(["sgdisk", "--zap-all", disk])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E012", f"{disk}: {e}")

    def create_partitions(self, disk, swap_size, swap_enabled):
        """Create the GPT layout: EFI, optional swap, ZFS on the rest"""
        logger.info("Creating partitions...")
        commands = [["sgdisk", f"-n1:1M:{EFI_SIZE}", "-t1:EF00", "-c1:EFI", disk]]
        zfs_number = 2
        if swap_enabled:
            commands.append(["sgdisk", f"-n2:0:+{swap_size}", "-t2:8200", "-c2:swap", disk])
            zfs_number = 3
        commands.append(["sgdisk", f"-n{zfs_number}:0:0", f"-t{zfs_number}:BF00", f"-c{zfs_number}:zfs", disk])

        try:
            for cmd in commands:
                self.runner.run(cmd)
        except subprocess.CalledProcessError as e:
            raise InstallerError("E013", f"{disk}: {e}")

    def settle(self, disk):
        """Let the kernel and udev pick up the new partition table"""
        self.runner.sleep(3)
        try:
            self.runner.run(["partprobe", disk])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E013", f"partprobe {disk}: {e}")
        self.runner.run(["udevadm", "settle"], check=False)
        self.runner.sleep(2)

    def wait_for_partition(self, path, timeout=PARTITION_TIMEOUT):
        """Poll until the partition device node exists"""
        remaining = timeout
        while not self.runner.is_block_device(path):
            if remaining <= 0:
                raise InstallerError("E015", f"{path} not found after partitioning")
            self.runner.sleep(1)
            remaining -= 1

    def format_partitions(self, layout):
        try:
            logger.info("Formatting EFI partition...")
            self.runner.run(["mkfs.vfat", "-F32", "-n", "EFI", layout.efi])
            if layout.swap:
                logger.info("Setting up swap...")
                self.runner.run(["mkswap", "-L", "swap", layout.swap])
        except subprocess.CalledProcessError as e:
            raise InstallerError("E014", str(e))

    def prepare_disk(self, config):
        """Wipe and partition the target disk; returns the PartitionLayout"""
        disk = config.disk
        logger.info(f"Preparing disk {disk}...")

        self.guard_not_installation_media(disk)
        if self.interactive:
            confirm = self.prompter.confirm(
                f"WARNING: This will ERASE ALL DATA on {disk}. Continue?",
                default=False
            )
            if not confirm:
                raise InstallerError("E080", "disk wipe not confirmed")

        logger.info("Unmounting existing filesystems...")
        self.unmount_disk(disk)
        self.disable_swap(disk)
        self._advance(DiskState.UNMOUNTED)

        self.wipe_disk(disk)
        self._advance(DiskState.WIPED)

        self.create_partitions(disk, config.swap_size, config.swap_enabled)
        self.settle(disk)
        layout = partition_layout(disk, config.swap_enabled, self.runner.is_block_device)
        logger.info(f"Partitions: EFI={layout.efi}, Swap={layout.swap or 'none'}, ZFS={layout.zfs}")
        for path in (layout.efi, layout.swap, layout.zfs):
            if path:
                self.wait_for_partition(path)
        self._advance(DiskState.PARTITIONED)

        self.format_partitions(layout)
        self._advance(DiskState.FORMATTED)

        self.partitions = layout
        self._advance(DiskState.READY)
        return layout
