#!/usr/bin/env python3
# zectl Manager Module
# Boot environment management through the zectl CLI

import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import datetime

from .base_system import APT_ENV, refresh_package_index
from .errors import InstallerError

logger = logging.getLogger(__name__)

ZECTL_REPO = "https://github.com/johnramsden/zectl.git"
BUILD_DIR = "/tmp/zectl"
BUILD_DEPENDENCIES = ["git", "cmake", "build-essential", "pkg-config", "libzfslinux-dev", "libbsd-dev"]

APT_HOOK_PATH = "etc/apt/apt.conf.d/80-zectl-snapshot"
APT_SNAPSHOT_SCRIPT_PATH = "usr/local/bin/zectl-apt-snapshot"

APT_HOOK = """\
// Automatically create boot environment snapshots before package operations
DPkg::Pre-Invoke {
    "if command -v zectl >/dev/null 2>&1 && [ -x /usr/local/bin/zectl-apt-snapshot ]; then /usr/local/bin/zectl-apt-snapshot pre; fi";
};

DPkg::Post-Invoke {
    "if command -v zectl >/dev/null 2>&1 && [ -x /usr/local/bin/zectl-apt-snapshot ]; then /usr/local/bin/zectl-apt-snapshot post; fi";
};
"""

APT_SNAPSHOT_SCRIPT = """\
#!/bin/bash
# Snapshot the active boot environment around dpkg runs
set -e

ACTION="${1:-pre}"
SNAPSHOT_PREFIX="apt"

CURRENT_BE=$(zectl list -H | awk -F'\\t' '$2 ~ /N/ {print $1; exit}')

if [[ -n "${CURRENT_BE}" ]]; then
    case "${ACTION}" in
        pre)
            SNAPSHOT_NAME="${SNAPSHOT_PREFIX}-pre-$(date +%Y%m%d-%H%M%S)"
            zectl snapshot "${CURRENT_BE}@${SNAPSHOT_NAME}"
            echo "Created pre-upgrade snapshot: ${CURRENT_BE}@${SNAPSHOT_NAME}"
            ;;
        post)
            if [[ "${CREATE_POST_SNAPSHOT:-false}" == "true" ]]; then
                SNAPSHOT_NAME="${SNAPSHOT_PREFIX}-post-$(date +%Y%m%d-%H%M%S)"
                zectl snapshot "${CURRENT_BE}@${SNAPSHOT_NAME}"
                echo "Created post-upgrade snapshot: ${CURRENT_BE}@${SNAPSHOT_NAME}"
            fi
            ;;
    esac
fi
"""


@dataclass
class BootEnvironment:
    name: str
    active: str = ""
    mountpoint: str = ""
    creation: str = ""

    @property
    def active_now(self):
        return "N" in self.active

    @property
    def active_on_reboot(self):
        return "R" in self.active

    def created_at(self):
        """Parse the creation column; None when zectl printed something unexpected"""
        for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%a %b %d %H:%M %Y"):
            try:
                return datetime.strptime(self.creation.strip(), fmt)
            except ValueError:
                continue
        return None


def parse_be_list(text):
    """Parse `zectl list -H` output (tab separated: name, active, mountpoint, creation)"""
    environments = []
    for line in text.splitlines():
        if not line.strip():
            continue
        fields = line.split("\t")
        if len(fields) == 1:
            fields = line.split()
        if fields[0] == "Name":
            continue
        fields += [""] * (4 - len(fields))
        name, active, mountpoint = fields[0].strip(), fields[1].strip(), fields[2].strip()
        creation = " ".join(part.strip() for part in fields[3:] if part.strip())
        environments.append(BootEnvironment(name, active, mountpoint, creation))
    return environments


class BootEnvironmentManager:
    """Runs zectl on the host, or inside the staging root when `root` is set"""

    def __init__(self, runner, root=None):
        self.runner = runner
        self.root = root

    def _run(self, cmd, **kwargs):
        if self.root:
            return self.runner.chroot(self.root, cmd, **kwargs)
        return self.runner.run(cmd, **kwargs)

    def _zectl(self, *args, check=True):
        return self._run(["zectl"] + list(args), check=check)

    def list(self):
        return parse_be_list(self._zectl("list", "-H").out)

    def active(self):
        for env in self.list():
            if env.active_now:
                return env
        return None

    def create(self, name, source=None, description=None):
        logger.info(f"Creating boot environment: {name}")
        args = ["create"]
        if source:
            args.extend(["-e", source])
        if description:
            args.extend(["-d", description])
        self._zectl(*args, name)

    def activate(self, name):
        logger.info(f"Activating boot environment: {name}")
        self._zectl("activate", name)

    def destroy(self, name, force=False):
        logger.info(f"Deleting boot environment: {name}")
        if force:
            self._zectl("destroy", "-F", name)
        else:
            self._zectl("destroy", name)

    def snapshot(self, be_name, snapshot_name):
        logger.info(f"Creating snapshot: {be_name}@{snapshot_name}")
        self._zectl("snapshot", f"{be_name}@{snapshot_name}")

    def mount(self, name, mountpoint=None):
        if mountpoint:
            os.makedirs(mountpoint, exist_ok=True)
            self._zectl("mount", name, mountpoint)
        else:
            self._zectl("mount", name)

    def umount(self, name):
        self._zectl("umount", name)

    def rename(self, old_name, new_name):
        logger.info(f"Renaming boot environment from {old_name} to {new_name}")
        self._zectl("rename", old_name, new_name)

    def set_property(self, prop):
        self._zectl("set", prop)

    def on_path(self):
        return self._run(["sh", "-c", "command -v zectl"], check=False).ok

    def install(self, build_dir=BUILD_DIR):
        """Build zectl from source with CMake inside the staging root"""
        logger.info("Installing zectl for boot environment management...")
        refresh_package_index(self.runner, self.root)

        steps = [
            (["apt-get", "install", "-y"] + BUILD_DEPENDENCIES, APT_ENV),
            (["rm", "-rf", build_dir], None),
            (["git", "clone", "--depth", "1", ZECTL_REPO, build_dir], None),
            (["cmake", "-S", build_dir, "-B", f"{build_dir}/build",
              "-DCMAKE_INSTALL_PREFIX=/usr/local", "-DCMAKE_BUILD_TYPE=Release"], None),
            (["cmake", "--build", f"{build_dir}/build"], None),
            (["cmake", "--install", f"{build_dir}/build"], None),
        ]
        try:
            for cmd, cmd_env in steps:
                self._run(cmd, env=cmd_env)
        except subprocess.CalledProcessError as e:
            raise InstallerError("E060", f"{' '.join(e.cmd)}: exit {e.returncode}")

        self.configure()

    def configure(self):
        """Point zectl at systemd-boot on the ESP"""
        try:
            self.set_property("bootloader=systemd-boot")
            self.set_property("systemdboot:efi=/boot/efi")
        except subprocess.CalledProcessError as e:
            raise InstallerError("E060", f"zectl set: exit {e.returncode}")

    def verify(self):
        """zectl must be on PATH and able to list boot environments"""
        if not self.on_path():
            raise InstallerError("E062", "zectl not found after installation")
        result = self._zectl("list", check=False)
        if not result.ok:
            raise InstallerError("E061", f"zectl list: exit {result.rc}")
        logger.info("zectl installed and functional.")

    def initial_snapshot(self, be_name="ubuntu", snapshot_name="initial"):
        try:
            self.snapshot(be_name, snapshot_name)
        except subprocess.CalledProcessError as e:
            logger.warning(f"Could not create initial snapshot {be_name}@{snapshot_name}: exit {e.returncode}")

    def install_apt_hooks(self, root):
        """APT hook that snapshots the active boot environment around dpkg runs"""
        logger.info("Setting up APT hooks for automatic snapshots...")
        hook = os.path.join(root, APT_HOOK_PATH)
        script = os.path.join(root, APT_SNAPSHOT_SCRIPT_PATH)
        try:
            os.makedirs(os.path.dirname(hook), exist_ok=True)
            os.makedirs(os.path.dirname(script), exist_ok=True)
            with open(hook, "w") as f:
                f.write(APT_HOOK)
            with open(script, "w") as f:
                f.write(APT_SNAPSHOT_SCRIPT)
            os.chmod(script, 0o755)
        except OSError as e:
            raise InstallerError("E060", f"APT snapshot hook: {e}")
