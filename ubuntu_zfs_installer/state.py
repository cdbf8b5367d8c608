#!/usr/bin/env python3
# State Store Module
# Persists stage completion flags so an interrupted run can resume

import logging
import os
import re
from enum import IntEnum

from .errors import InstallerError

logger = logging.getLogger(__name__)

STATE_FILE = "/tmp/ubuntu-zfs-installer.state"

_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


class Stage(IntEnum):
    """Installation stages in their fixed execution order"""

    DISK_PREPARED = 1
    ZFS_CREATED = 2
    BASE_INSTALLED = 3
    SYSTEM_CONFIGURED = 4
    ZECTL_INSTALLED = 5
    SYSTEMD_BOOT_INSTALLED = 6
    INSTALLATION_COMPLETE = 7

    @property
    def action(self):
        return STAGE_ACTIONS[self]


STAGE_ACTIONS = {
    Stage.DISK_PREPARED: "prepare_disk",
    Stage.ZFS_CREATED: "create_zfs_pool",
    Stage.BASE_INSTALLED: "install_base_system",
    Stage.SYSTEM_CONFIGURED: "configure_system",
    Stage.ZECTL_INSTALLED: "install_zectl",
    Stage.SYSTEMD_BOOT_INSTALLED: "install_systemd_boot",
    Stage.INSTALLATION_COMPLETE: "finalize_installation",
}


def parse_state(text):
    """Parse KEY=VALUE state lines into a dict.

    Duplicate keys resolve to the last value. Blank lines and comments are
    ignored; anything else that is not KEY=VALUE raises E074.
    """
    values = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not _KEY_RE.match(key):
            raise InstallerError("E074", f"line {lineno}: {raw!r}")
        if key in Stage.__members__ and value not in ("true", "false"):
            raise InstallerError("E074", f"line {lineno}: flag {key} must be true or false, got {value!r}")
        values[key] = value
    return values


class StateStore:
    def __init__(self, path=STATE_FILE):
        self.path = path
        self.values = {}

    def load(self):
        """Read persisted state into memory"""
        self.values = {}
        if os.path.exists(self.path):
            with open(self.path, "r") as f:
                self.values = parse_state(f.read())
            logger.debug(f"Loaded installation state from {self.path}: {self.values}")
        return dict(self.values)

    def save(self, key, value):
        """Persist key=value, replacing an existing line for the same key"""
        if not _KEY_RE.match(key) or "\n" in str(value):
            raise InstallerError("E073", f"invalid state entry {key}={value!r}")
        value = str(value)

        lines = []
        if os.path.exists(self.path):
            with open(self.path, "r") as f:
                lines = f.read().splitlines()

        replaced = False
        updated = []
        for line in lines:
            if line.partition("=")[0].strip() == key:
                # Collapse duplicates left by older runs into one line
                if not replaced:
                    updated.append(f"{key}={value}")
                    replaced = True
                continue
            updated.append(line)
        if not replaced:
            updated.append(f"{key}={value}")

        tmp_path = f"{self.path}.tmp"
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w") as f:
                f.write("\n".join(updated) + "\n")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise InstallerError("E073", f"{self.path}: {e}")

        self.values[key] = value

    def get(self, key, default=None):
        return self.values.get(key, default)

    def is_done(self, stage):
        return self.values.get(stage.name) == "true"

    def mark_done(self, stage):
        self.save(stage.name, "true")

    def completed(self):
        return [stage for stage in Stage if self.is_done(stage)]

    def pending(self):
        return [stage for stage in Stage if not self.is_done(stage)]

    def order_gaps(self):
        """Return stages that are incomplete although a later stage is done"""
        done = self.completed()
        if not done:
            return []
        last = max(done)
        return [stage for stage in Stage if stage < last and not self.is_done(stage)]

    def reset(self):
        """Remove the state file"""
        self.values = {}
        if os.path.exists(self.path):
            os.remove(self.path)
            logger.info(f"Removed installation state file {self.path}")
