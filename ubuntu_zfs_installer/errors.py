#!/usr/bin/env python3
# Error Module
# Stable error codes and the boxed diagnostic printed on fatal failures

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

# code: (category, description, remediation hints)
ERROR_CODES = {
    "E001": ("system", "Installer is not running as root", ["Re-run the installer with sudo."]),
    "E002": ("system", "System is not booted in UEFI mode", ["Reboot the live media in UEFI mode (disable CSM/legacy boot)."]),
    "E003": ("system", "EFI variables are not available", ["Check that efivarfs is mounted: mount -t efivarfs efivarfs /sys/firmware/efi/efivars"]),
    "E004": ("system", "Unsupported operating system or version", ["Boot an Ubuntu live image or set UBUNTU_VERSION in installer.conf."]),
    "E005": ("system", "Required host packages are missing", ["Install them manually: apt-get install debootstrap gdisk zfsutils-linux efibootmgr dosfstools"]),
    "E006": ("system", "ZFS kernel module is unavailable", ["Install zfsutils-linux and run: modprobe zfs"]),
    "E010": ("disk", "Disk preparation failed", ["Check that nothing on the target disk is in use: lsblk -f"]),
    "E011": ("disk", "Target disk not found", ["List available disks with: lsblk -d"]),
    "E012": ("disk", "Wiping the disk failed", ["Make sure no partition of the disk is mounted or used as swap."]),
    "E013": ("disk", "Partitioning failed", ["Inspect the partition table with: sgdisk -p <disk>"]),
    "E014": ("disk", "Formatting a partition failed", ["Check dmesg for I/O errors on the target disk."]),
    "E015": ("disk", "Partition device did not appear", ["Run udevadm settle and partprobe, then resume the installer."]),
    "E020": ("zfs", "ZFS pool creation failed", ["Check for a stale pool with: zpool import", "Use --restart to clean up and retry."]),
    "E021": ("zfs", "ZFS dataset creation failed", ["Inspect the pool with: zfs list -r <pool>"]),
    "E022": ("zfs", "ZFS mount failed", ["Check mountpoints with: zfs get mountpoint,canmount -r <pool>"]),
    "E023": ("zfs", "Setting a ZFS property failed", ["Inspect pool properties with: zpool get all <pool>"]),
    "E024": ("zfs", "ZFS pool import or key load failed", ["Try importing manually: zpool import -N -R /mnt <pool>"]),
    "E030": ("install", "Bootstrapping the base system failed", ["Check network access and the selected mirror, then resume."]),
    "E031": ("install", "Package installation failed", ["Retry after checking the chroot's /etc/apt/sources.list."]),
    "E032": ("install", "Network is unavailable", ["Check connectivity with: ping -c1 archive.ubuntu.com"]),
    "E033": ("install", "No usable package mirror", ["Set UBUNTU_MIRROR in installer.conf to a reachable mirror."]),
    "E034": ("install", "Ubuntu release codename is unknown", ["Set UBUNTU_VERSION to a supported release (22.04, 24.04, 24.10, 25.04)."]),
    "E035": ("install", "Mounting chroot filesystems failed", ["Check existing mounts with: findmnt -R /mnt"]),
    "E036": ("install", "Copying the live filesystem failed", ["Set INSTALL_METHOD=debootstrap to bootstrap from a mirror instead."]),
    "E040": ("config", "Locale configuration failed", ["Check the LOCALE value, e.g. en_US.UTF-8."]),
    "E041": ("config", "Timezone is invalid or could not be set", ["List valid timezones with: timedatectl list-timezones"]),
    "E042": ("config", "Hostname or network configuration failed", ["Use 1-63 letters, digits and inner hyphens for HOSTNAME."]),
    "E043": ("config", "User account creation failed", ["Usernames must match ^[a-z][-a-z0-9_]{2,31}$."]),
    "E044": ("config", "Password configuration failed", ["Re-enter the password; both entries must match."]),
    "E045": ("config", "Invalid configuration value", ["Fix the value in installer.conf or on the command line."]),
    "E046": ("config", "Malformed configuration file", ["Every non-comment line must have the form KEY=VALUE."]),
    "E050": ("boot", "Boot loader installation failed", ["Check that the ESP is mounted at /mnt/boot/efi."]),
    "E051": ("boot", "Boot entry creation failed", ["Inspect /mnt/boot/efi/loader/entries/."]),
    "E052": ("boot", "Mounting the EFI system partition failed", ["Check the ESP with: blkid <efi partition>"]),
    "E053": ("boot", "Kernel or initrd missing or not copied to the ESP", ["Check /mnt/boot for vmlinuz-* and initrd.img-* files."]),
    "E060": ("be", "zectl installation failed", ["Check the build output in the log file."]),
    "E061": ("be", "zectl is installed but not functional", ["Run inside the chroot: zectl list"]),
    "E062": ("be", "zectl was not found on PATH", ["Check /usr/local/bin/zectl inside the target system."]),
    "E070": ("finalize", "Finalizing the installation failed", ["Inspect the log, then resume the installer."]),
    "E071": ("finalize", "Unmounting target filesystems failed", ["Check for busy mounts with: findmnt -R /mnt"]),
    "E072": ("finalize", "Exporting the ZFS pool failed", ["Export manually with: zpool export -f <pool>"]),
    "E073": ("finalize", "Saving installation state failed", ["Check that /tmp is writable."]),
    "E074": ("finalize", "Installation state file is corrupt", ["Inspect the state file, or clear it with --reset."]),
    "E080": ("user", "Installation cancelled by user", ["Re-run the installer to resume where it stopped."]),
    "E081": ("user", "Invalid selection", ["Choose one of the offered options."]),
    "E082": ("user", "Installation media selected as the target disk", ["Select a disk that does not hold the running live system."]),
}


class InstallerError(Exception):
    """Fatal installer failure identified by a stable error code"""

    def __init__(self, code, detail=""):
        if code not in ERROR_CODES:
            raise ValueError(f"Unknown error code: {code}")
        self.code = code
        self.detail = detail
        super().__init__(f"{code}: {self.description}" + (f" ({detail})" if detail else ""))

    @property
    def category(self):
        return ERROR_CODES[self.code][0]

    @property
    def description(self):
        return ERROR_CODES[self.code][1]

    @property
    def hints(self):
        return list(ERROR_CODES[self.code][2])

    @property
    def exit_code(self):
        return exit_code_for(self.code)


def exit_code_for(code):
    """Map an error code to the process exit status (E030 -> 30)"""
    return int(code[1:])


def support_commands(log_file=None):
    """Commands a user should run to gather a support bundle"""
    commands = []
    if log_file:
        commands.append(f"tail -n 100 {log_file}")
    commands.extend(["lsblk -f", "uname -a", "zpool status"])
    return commands


def print_diagnostic(error, log_file=None, console=None):
    """Print a boxed diagnostic for a fatal error to standard error"""
    console = console or Console(stderr=True)

    lines = [
        f"[bold]Error code:[/bold] {error.code} ({error.category})",
        f"[bold]Description:[/bold] {error.description}",
    ]
    if error.detail:
        lines.append(f"[bold]Detail:[/bold] {escape(error.detail)}")
    if log_file:
        lines.append(f"[bold]Log file:[/bold] {escape(log_file)}")

    lines.append("")
    lines.append("[bold]Suggested fixes:[/bold]")
    lines.extend(f"  - {escape(hint)}" for hint in error.hints)

    lines.append("")
    lines.append("[bold]To gather support information run:[/bold]")
    lines.extend(f"  {escape(cmd)}" for cmd in support_commands(log_file))

    console.print(Panel("\n".join(lines), title="Installation failed", border_style="red", expand=False))

