#!/usr/bin/env python3
# Base System Module
# Populates the staging root with debootstrap or a copy of the live system

import logging
import os
import shlex
import shutil
import subprocess

from .errors import InstallerError

logger = logging.getLogger(__name__)

CODENAMES = {
    "20.04": "focal",
    "22.04": "jammy",
    "24.04": "noble",
    "24.10": "oracular",
    "25.04": "plucky",
}

ESSENTIAL_PACKAGES = ["locales", "systemd-sysv", "zfsutils-linux", "zfs-initramfs"]
BASE_PACKAGES = ["linux-image-generic", "linux-headers-generic", "efibootmgr", "systemd"]
INSTALL_TYPE_PACKAGES = {
    "desktop": ["ubuntu-desktop-minimal", "network-manager"],
    "server": ["ubuntu-server", "openssh-server", "curl", "wget"],
    "minimal": ["openssh-server", "curl", "wget", "vim"],
}
COMPONENTS = "main,restricted,universe,multiverse"

LIVE_MEDIA_DIR = "/cdrom/casper"
LIVE_ONLY_PACKAGES = ["casper", "ubiquity", "ubuntu-desktop-bootstrap", "subiquity"]
COPY_EXCLUDES = [
    "/dev/*", "/proc/*", "/sys/*", "/run/*", "/tmp/*", "/mnt/*", "/media/*",
    "/cdrom/*", "/rofs/*", "/lost+found", "/swap.img", "/var/cache/apt/archives/*.deb",
    "/etc/fstab", "/etc/machine-id",
]

# (target below the staging root, mount arguments) in mount order
CHROOT_MOUNTS = [
    ("proc", ["-t", "proc", "proc"]),
    ("sys", ["-t", "sysfs", "sys"]),
    ("dev", ["-B", "/dev"]),
    ("dev/pts", ["-t", "devpts", "devpts"]),
    ("run", ["-B", "/run"]),
]

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def read_os_release(path="/etc/os-release"):
    """Parse an os-release file into a dict"""
    values = {}
    if not os.path.exists(path):
        return values
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            try:
                parsed = shlex.split(value)
            except ValueError:
                parsed = [value]
            values[key] = parsed[0] if parsed else ""
    return values


def detect_codename(version, os_release=None):
    """Map an Ubuntu version to its codename, falling back to the running system"""
    if version in CODENAMES:
        return CODENAMES[version]
    codename = (os_release or {}).get("VERSION_CODENAME")
    if codename:
        logger.warning(f"Ubuntu version {version} is not in the codename table, using running codename {codename}")
        return codename
    raise InstallerError("E034", f"unknown Ubuntu version {version!r} and no codename detected")


def package_list(install_type):
    return ESSENTIAL_PACKAGES + BASE_PACKAGES + INSTALL_TYPE_PACKAGES.get(install_type, [])


def sources_list(codename, mirror, security_mirror):
    components = COMPONENTS.replace(",", " ")
    return (
        f"deb {mirror} {codename} {components}\n"
        f"deb {mirror} {codename}-updates {components}\n"
        f"deb {mirror} {codename}-backports {components}\n"
        f"deb {security_mirror} {codename}-security {components}\n"
    )


def refresh_package_index(runner, root=None, attempts=3, delay=5):
    """apt-get update in the chroot, or on the host without a root, with bounded retries"""
    cmd = ["apt-get", "update"]
    for attempt in range(1, attempts + 1):
        if root:
            result = runner.chroot(root, cmd, check=False, env=APT_ENV)
        else:
            result = runner.run(cmd, check=False, env=APT_ENV)
        if result.ok:
            return True
        if attempt < attempts:
            logger.warning(f"Package index update failed, retrying in {delay} seconds ({attempts - attempt} attempts left)")
            runner.sleep(delay)
            delay *= 2
    logger.warning("Package index update failed, continuing with cached metadata")
    return False


class BaseSystemInstaller:
    def __init__(self, runner, mirror_selector, live_media_dir=LIVE_MEDIA_DIR):
        self.runner = runner
        self.mirror_selector = mirror_selector
        self.live_media_dir = live_media_dir
        self.mirror = None

    def choose_method(self, config, os_release):
        """Pick debootstrap or a live copy; auto copies only from matching live media"""
        if config.install_method != "auto":
            return config.install_method
        live = os.path.isdir(self.live_media_dir)
        if live and os_release.get("VERSION_ID") == config.ubuntu_version:
            return "copy"
        return "debootstrap"

    def install(self, config, codename, os_release=None):
        """Populate the staging root and prepare it for chroot work"""
        logger.info(f"Installing base system (Ubuntu {config.ubuntu_version}, {codename})...")

        candidate = self.mirror_selector.select(config.mirror, codename)
        security = self.mirror_selector.security_mirror(codename)
        self.mirror = candidate.url

        method = self.choose_method(config, os_release or {})
        if method == "copy":
            self.copy_live_filesystem(config)
        else:
            self.run_debootstrap(config, codename, candidate.url)

        self.configure_apt_sources(config, codename, candidate.url, security)
        self.mount_chroot_filesystems(config.root_mount)

        if method == "copy":
            self.install_live_copy_packages(config)
        return candidate.url

    def run_debootstrap(self, config, codename, mirror):
        packages = ",".join(package_list(config.install_type))
        logger.info(f"Running debootstrap with packages: {packages}")
        cmd = [
            "debootstrap",
            f"--arch={self.mirror_selector.arch}",
            f"--include={packages}",
            f"--components={COMPONENTS}",
            codename,
            config.root_mount,
            mirror,
        ]
        try:
            self.runner.run(cmd)
        except subprocess.CalledProcessError as e:
            raise InstallerError("E030", f"debootstrap exited with {e.returncode}")

    def copy_live_filesystem(self, config):
        """Copy the running live system into the staging root"""
        logger.info("Copying live filesystem to the target (fast install)...")
        if not self.runner.which("rsync"):
            raise InstallerError("E036", "rsync is not available")

        cmd = ["rsync", "-aHAXx", "--numeric-ids"]
        for pattern in COPY_EXCLUDES + [config.root_mount.rstrip("/") + "/*"]:
            cmd.extend(["--exclude", pattern])
        cmd.extend(["/", config.root_mount.rstrip("/") + "/"])

        result = self.runner.run(cmd, check=False)
        if result.rc in (23, 24):
            logger.warning(f"rsync finished with code {result.rc} (vanished or unreadable files), continuing")
        elif not result.ok:
            raise InstallerError("E036", f"rsync exited with {result.rc}")

    def configure_apt_sources(self, config, codename, mirror, security_mirror):
        logger.info("Configuring apt sources...")
        apt_dir = os.path.join(config.root_mount, "etc/apt")
        os.makedirs(os.path.join(apt_dir, "sources.list.d"), exist_ok=True)

        with open(os.path.join(apt_dir, "sources.list"), "w") as f:
            f.write(sources_list(codename, mirror, security_mirror))

        # Drop entries inherited from the live image
        for name in ("ubuntu.sources", "cdrom.list"):
            path = os.path.join(apt_dir, "sources.list.d", name)
            if os.path.exists(path):
                os.remove(path)

        try:
            shutil.copy("/etc/resolv.conf", os.path.join(config.root_mount, "etc/resolv.conf"))
        except OSError as e:
            logger.warning(f"Failed to copy resolv.conf: {e}")

    def mount_chroot_filesystems(self, root):
        """Establish proc, sys, dev, devpts and run below the staging root"""
        logger.info("Mounting filesystems for chroot environment...")
        for target, args in CHROOT_MOUNTS:
            path = os.path.join(root, target)
            os.makedirs(path, exist_ok=True)
            if self.runner.is_mountpoint(path):
                logger.debug(f"{path} already mounted")
                continue
            try:
                self.runner.run(["mount"] + args + [path])
            except subprocess.CalledProcessError as e:
                raise InstallerError("E035", f"mount {path}: exit {e.returncode}")

    def unmount_chroot_filesystems(self, root, extra=("boot/efi",)):
        """Unmount chroot mounts in reverse order, lazily if needed"""
        targets = [target for target, _ in reversed(CHROOT_MOUNTS)] + list(extra)
        for target in targets:
            path = os.path.join(root, target)
            if not self.runner.is_mountpoint(path):
                continue
            if not self.runner.run(["umount", path], check=False).ok:
                logger.warning(f"Failed to unmount {path}, trying lazy unmount")
                if not self.runner.run(["umount", "-l", path], check=False).ok:
                    logger.warning(f"Lazy unmount also failed for {path}")

    def refresh_package_index(self, root, attempts=3, delay=5):
        return refresh_package_index(self.runner, root, attempts, delay)

    def install_live_copy_packages(self, config):
        """Add the ZFS boot packages a live image lacks and drop live-only ones"""
        root = config.root_mount
        self.refresh_package_index(root)

        try:
            self.runner.chroot(root, ["apt-get", "install", "-y"] + ESSENTIAL_PACKAGES, env=APT_ENV)
        except subprocess.CalledProcessError as e:
            raise InstallerError("E031", f"apt-get install {' '.join(ESSENTIAL_PACKAGES)}: exit {e.returncode}")

        extras = BASE_PACKAGES + INSTALL_TYPE_PACKAGES.get(config.install_type, [])
        result = self.runner.chroot(root, ["apt-get", "install", "-y"] + extras, check=False, env=APT_ENV)
        if not result.ok:
            logger.warning(f"Some optional packages could not be installed: {' '.join(extras)}")

        result = self.runner.chroot(root, ["apt-get", "purge", "-y"] + LIVE_ONLY_PACKAGES, check=False, env=APT_ENV)
        if not result.ok:
            logger.warning("Could not remove live-session packages from the target")
