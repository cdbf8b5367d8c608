#!/usr/bin/env python3
# Ubuntu ZFS Installer
# Package initialization file

VERSION = "1.0.0"

from .disk_manager import DiskManager
from .zfs_manager import ZFSManager
from .base_system import BaseSystemInstaller
from .boot_manager import BootManager
from .system_config import SystemConfig
from .zectl_manager import BootEnvironmentManager
from .installer import Installer
