#!/usr/bin/env python3
# Configuration Module
# Resolves the installation configuration from defaults, installer.conf,
# command line flags and interactive prompts

import logging
import os
import re
import shlex
from dataclasses import dataclass, field, fields, replace

from .errors import InstallerError

logger = logging.getLogger(__name__)

ZONEINFO_DIR = "/usr/share/zoneinfo"
INSTALL_TYPES = ("server", "desktop", "minimal")
KEY_DELIVERY_MODES = ("prompt", "keyfile")
INSTALL_METHODS = ("auto", "debootstrap", "copy")
COMPRESSION_ALGORITHMS = ("lz4", "zstd", "gzip", "zle", "lzjb", "on", "off")
PASSPHRASE_MIN_LENGTH = 8
PASSPHRASE_MAX_LENGTH = 512

USERNAME_RE = re.compile(r"^[a-z][-a-z0-9_]{2,31}$")
HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
POOL_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_.:-]*$")
SWAP_SIZE_RE = re.compile(r"^\d+[KMGT]?$")
CONFIG_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# installer.conf key -> InstallConfig field
CONFIG_KEYS = {
    "DISK": "disk",
    "USERNAME": "username",
    "HOSTNAME": "hostname",
    "ENCRYPTION": "encryption",
    "INSTALL_TYPE": "install_type",
    "POOL_NAME": "pool_name",
    "TIMEZONE": "timezone",
    "LOCALE": "locale",
    "SWAP_SIZE": "swap_size",
    "UBUNTU_VERSION": "ubuntu_version",
    "UBUNTU_MIRROR": "mirror",
    "ZFS_ASHIFT": "zfs_ashift",
    "ZFS_COMPRESSION": "zfs_compression",
    "ZFS_ATIME": "zfs_atime",
    "ZFS_RECORDSIZE": "zfs_recordsize",
    "POST_INSTALL_SCRIPT": "post_install_script",
    "PASSPHRASE": "passphrase",
    "USER_PASSWORD": "user_password",
    "ROOT_PASSWORD": "root_password",
    "ZFS_KEY_DELIVERY": "key_delivery",
    "INSTALL_METHOD": "install_method",
}


@dataclass(frozen=True)
class InstallConfig:
    disk: str = ""
    pool_name: str = "rpool"
    encryption: bool = False
    passphrase: str = field(default="", repr=False)
    key_delivery: str = "prompt"
    swap_size: str = "4G"
    username: str = ""
    user_password: str = field(default="", repr=False)
    root_password: str = field(default="", repr=False)
    hostname: str = ""
    timezone: str = "America/Chicago"
    locale: str = "en_US.UTF-8"
    install_type: str = "server"
    ubuntu_version: str = ""
    mirror: str = ""
    install_method: str = "auto"
    zfs_ashift: int = 12
    zfs_compression: str = "lz4"
    zfs_atime: str = "off"
    zfs_recordsize: str = ""
    post_install_script: str = ""
    root_mount: str = "/mnt"

    @property
    def swap_enabled(self):
        return swap_size_enabled(self.swap_size)

    @property
    def root_dataset(self):
        return f"{self.pool_name}/ROOT/ubuntu"

    def summary(self):
        """Human readable (label, value) pairs; secrets are never included"""
        return [
            ("Installation type", self.install_type),
            ("Disk", self.disk),
            ("Pool name", self.pool_name),
            ("Encryption", f"on ({self.key_delivery})" if self.encryption else "off"),
            ("Swap size", self.swap_size if self.swap_enabled else "none"),
            ("Username", self.username),
            ("Hostname", self.hostname),
            ("Timezone", self.timezone),
            ("Locale", self.locale),
            ("Ubuntu version", self.ubuntu_version or "(running release)"),
            ("Mirror", self.mirror or "(auto-detect)"),
            ("Install method", self.install_method),
            ("Staging root", self.root_mount),
        ]


def swap_size_enabled(size):
    return bool(size) and re.sub(r"[KMGT]$", "", str(size)) not in ("", "0")


def validate_username(username):
    return bool(username) and USERNAME_RE.match(username) is not None


def validate_hostname(hostname):
    return bool(hostname) and len(hostname) <= 63 and HOSTNAME_RE.match(hostname) is not None


def validate_timezone(timezone, zoneinfo_dir=ZONEINFO_DIR):
    if not timezone or timezone.startswith("/") or ".." in timezone.split("/"):
        return False
    return os.path.isfile(os.path.join(zoneinfo_dir, timezone))


def validate_passphrase(passphrase, confirmation):
    return bool(passphrase) and passphrase == confirmation


def validate_pool_name(name):
    return bool(name) and POOL_NAME_RE.match(name) is not None


def validate_swap_size(size):
    return bool(size) and SWAP_SIZE_RE.match(str(size)) is not None


def parse_config_text(text, source="installer.conf"):
    """Parse shell-style KEY=VALUE lines without executing anything"""
    values = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        try:
            tokens = shlex.split(raw, comments=True)
        except ValueError as e:
            raise InstallerError("E046", f"{source}:{lineno}: {e}")
        if tokens and tokens[0] == "export":
            tokens = tokens[1:]
        if not tokens:
            continue
        if len(tokens) != 1 or "=" not in tokens[0]:
            raise InstallerError("E046", f"{source}:{lineno}: expected KEY=VALUE, got {raw.strip()!r}")
        key, _, value = tokens[0].partition("=")
        if not CONFIG_KEY_RE.match(key):
            raise InstallerError("E046", f"{source}:{lineno}: invalid key {key!r}")
        values[key] = value
    return values


def load_config_file(path):
    """Read installer.conf; a missing file yields no values"""
    if not path or not os.path.exists(path):
        logger.info("No installer.conf found, using defaults and interactive answers")
        return {}
    logger.info(f"Loading configuration from {path}")
    with open(path, "r") as f:
        return parse_config_text(f.read(), source=path)


def _parse_bool(key, value):
    lowered = str(value).strip().lower()
    if lowered in ("on", "true", "yes", "1"):
        return True
    if lowered in ("off", "false", "no", "0", ""):
        return False
    raise InstallerError("E045", f"{key} must be on or off, got {value!r}")


def config_values_from_file(file_values):
    """Translate installer.conf keys into InstallConfig field values"""
    values = {}
    for key, value in file_values.items():
        name = CONFIG_KEYS.get(key)
        if name is None:
            logger.warning(f"Ignoring unknown configuration key {key}")
            continue
        if name == "encryption":
            values[name] = _parse_bool(key, value)
        elif name == "zfs_ashift":
            try:
                values[name] = int(value)
            except ValueError:
                raise InstallerError("E045", f"ZFS_ASHIFT must be an integer, got {value!r}")
        else:
            values[name] = value
    return values


class ConfigResolver:
    """Builds a validated InstallConfig.

    Priority: command line flags > installer.conf > interactive prompts >
    defaults. Prompts only ask for values that neither the flags nor the
    file provided.
    """

    def __init__(self, runner, prompter=None, interactive=True, zoneinfo_dir=ZONEINFO_DIR, list_disks=None):
        self.runner = runner
        self.prompter = prompter
        self.interactive = interactive
        self.zoneinfo_dir = zoneinfo_dir
        self.list_disks = list_disks or (lambda: [])

    def resolve(self, file_values=None, cli_values=None, base=None):
        """Merge every source and return the validated configuration"""
        values = config_values_from_file(file_values or {})
        for name, value in (cli_values or {}).items():
            if value is not None:
                values[name] = value

        known = {f.name for f in fields(InstallConfig)}
        config = replace(base or InstallConfig(), **{k: v for k, v in values.items() if k in known})

        if self.interactive:
            config = self._prompt_missing(config, set(values))
        else:
            self._require_non_interactive(config)

        self.validate(config)

        if self.interactive:
            self._confirm_summary(config)
        return config

    def _require_non_interactive(self, config):
        missing = [name.upper() for name in ("disk", "username", "hostname") if not getattr(config, name)]
        if missing:
            raise InstallerError("E045", f"non-interactive mode requires {', '.join(missing)}")
        if config.encryption and not config.passphrase:
            raise InstallerError("E045", "ENCRYPTION=on requires PASSPHRASE in non-interactive mode")

    def validate(self, config):
        """Reject invalid values with a fatal configuration error"""
        if not validate_username(config.username):
            raise InstallerError("E045", f"invalid username {config.username!r}")
        if not validate_hostname(config.hostname):
            raise InstallerError("E045", f"invalid hostname {config.hostname!r}")
        if not validate_timezone(config.timezone, self.zoneinfo_dir):
            raise InstallerError("E041", f"unknown timezone {config.timezone!r}")
        if not validate_pool_name(config.pool_name):
            raise InstallerError("E045", f"invalid pool name {config.pool_name!r}")
        if not validate_swap_size(config.swap_size):
            raise InstallerError("E045", f"invalid swap size {config.swap_size!r}")
        if config.install_type not in INSTALL_TYPES:
            raise InstallerError("E045", f"INSTALL_TYPE must be one of {', '.join(INSTALL_TYPES)}")
        if config.key_delivery not in KEY_DELIVERY_MODES:
            raise InstallerError("E045", f"ZFS_KEY_DELIVERY must be one of {', '.join(KEY_DELIVERY_MODES)}")
        if config.install_method not in INSTALL_METHODS:
            raise InstallerError("E045", f"INSTALL_METHOD must be one of {', '.join(INSTALL_METHODS)}")
        if not 9 <= config.zfs_ashift <= 16:
            raise InstallerError("E045", f"ZFS_ASHIFT must be between 9 and 16, got {config.zfs_ashift}")
        if config.zfs_compression not in COMPRESSION_ALGORITHMS and not config.zfs_compression.startswith(("zstd-", "gzip-")):
            raise InstallerError("E045", f"unsupported compression {config.zfs_compression!r}")
        if config.zfs_atime not in ("on", "off"):
            raise InstallerError("E045", f"ZFS_ATIME must be on or off, got {config.zfs_atime!r}")
        if config.encryption and not config.passphrase:
            raise InstallerError("E044", "encryption enabled but no passphrase provided")
        if config.encryption and not PASSPHRASE_MIN_LENGTH <= len(config.passphrase) <= PASSPHRASE_MAX_LENGTH:
            raise InstallerError(
                "E044", f"passphrase must be {PASSPHRASE_MIN_LENGTH} to {PASSPHRASE_MAX_LENGTH} characters long"
            )
        if config.post_install_script and not os.path.isfile(config.post_install_script):
            raise InstallerError("E045", f"POST_INSTALL_SCRIPT not found: {config.post_install_script}")
        if not self.runner.is_block_device(config.disk):
            raise InstallerError("E011", f"{config.disk} is not a block device")

    def _prompt_missing(self, config, provided):
        """Ask for every value the flags and installer.conf left open"""
        prompter = self.prompter
        updates = {}

        if "install_type" not in provided:
            updates["install_type"] = prompter.select(
                "Select installation type:",
                [("server", "Server"), ("desktop", "Desktop (with GUI)"), ("minimal", "Minimal (basic system only)")],
                default=config.install_type,
            )

        if "disk" not in provided:
            disks = self.list_disks()
            if not disks:
                raise InstallerError("E011", "no disks found")
            updates["disk"] = prompter.select(
                "Select the target disk (ALL DATA WILL BE ERASED):",
                [(d["path"], f"{d['path']} ({d['size']}) - {d['model']}") for d in disks],
            )

        if "pool_name" not in provided:
            updates["pool_name"] = prompter.text(
                "Enter ZFS pool name:",
                default=config.pool_name,
                validate=validate_pool_name,
                invalid_message="Pool names start with a letter and contain no spaces",
            )

        encryption = config.encryption
        if "encryption" not in provided:
            encryption = prompter.confirm("Enable native ZFS encryption?", default=False)
            updates["encryption"] = encryption
        if encryption and "passphrase" not in provided:
            updates["passphrase"] = self._ask_secret_twice("encryption passphrase", min_length=PASSPHRASE_MIN_LENGTH)

        if "username" not in provided:
            updates["username"] = prompter.text(
                "Enter username for the new system:",
                validate=validate_username,
                invalid_message="Start with a letter, 3-32 characters of a-z, 0-9, '-' or '_'",
            )

        if "user_password" not in provided:
            name = updates.get("username", config.username)
            updates["user_password"] = self._ask_secret_twice(f"password for {name}", min_length=8)

        if "root_password" not in provided:
            updates["root_password"] = prompter.secret(
                "Root password (leave empty to disable root login):"
            )

        if "hostname" not in provided:
            updates["hostname"] = prompter.text(
                "Enter hostname:",
                validate=validate_hostname,
                invalid_message="1-63 letters, digits and inner hyphens",
            )

        if "timezone" not in provided:
            updates["timezone"] = prompter.text(
                "Enter timezone:",
                default=config.timezone,
                validate=lambda tz: validate_timezone(tz, self.zoneinfo_dir),
                invalid_message="Unknown timezone, see: timedatectl list-timezones",
            )

        return replace(config, **updates)

    def _ask_secret_twice(self, what, min_length=1):
        while True:
            first = self.prompter.secret(
                f"Enter {what}:",
                validate=lambda text: len(text) >= min_length,
                invalid_message=f"Must be at least {min_length} characters",
            )
            second = self.prompter.secret(f"Confirm {what}:")
            if validate_passphrase(first, second):
                return first
            logger.warning("Entries do not match, please try again")

    def _confirm_summary(self, config):
        logger.info("Configuration summary:")
        for label, value in config.summary():
            logger.info(f"  {label}: {value}")
        if not self.prompter.confirm("Proceed with installation?", default=False):
            raise InstallerError("E080", "configuration not confirmed")
