import pytest

from ubuntu_zfs_installer.config import InstallConfig
from ubuntu_zfs_installer.runner import CommandRunner, Result


def strip_chroot(cmd):
    if len(cmd) >= 2 and cmd[0] == "chroot":
        return cmd[2:]
    return cmd


class FakeRunner(CommandRunner):
    """Records every command; canned results are matched by command prefix.

    Commands run through chroot are matched without the `chroot <root>`
    prefix. Unmatched commands succeed with empty output.
    """

    def __init__(self, dry_run=False, tools=(), block_devices=None):
        super().__init__(dry_run=dry_run)
        self.requested = []
        self.calls = []
        self.inputs = []
        self.responses = []
        self.tools = set(tools)
        self.block_devices = block_devices
        self.sleeps = []

    def respond(self, prefix, rc=0, out="", err=""):
        # Later responses take precedence
        self.responses.insert(0, (list(prefix), Result(rc, out, err)))

    def run(self, cmd, **kwargs):
        self.requested.append([str(part) for part in cmd])
        return super().run(cmd, **kwargs)

    def _execute(self, cmd, input=None, env=None, timeout=None):
        self.calls.append(cmd)
        self.inputs.append(input)
        plain = strip_chroot(cmd)
        for prefix, result in self.responses:
            if plain[:len(prefix)] == prefix or cmd[:len(prefix)] == prefix:
                return result
        return Result(0)

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.tools else None

    def is_block_device(self, path):
        if self.block_devices is None:
            return True
        return path in self.block_devices

    def sleep(self, seconds):
        self.sleeps.append(seconds)

    def called(self, *prefix):
        prefix = list(prefix)
        return any(strip_chroot(cmd)[:len(prefix)] == prefix for cmd in self.calls)

    def index_of(self, *prefix):
        prefix = list(prefix)
        for i, cmd in enumerate(self.calls):
            if strip_chroot(cmd)[:len(prefix)] == prefix:
                return i
        raise AssertionError(f"{prefix} was never run")

    def matching(self, *prefix):
        prefix = list(prefix)
        return [cmd for cmd in self.calls if strip_chroot(cmd)[:len(prefix)] == prefix]


class ScriptedPrompter:
    """Answers prompts from per-kind queues and records the questions asked"""

    def __init__(self, select=(), text=(), secret=(), confirm=()):
        self.answers = {
            "select": list(select),
            "text": list(text),
            "secret": list(secret),
            "confirm": list(confirm),
        }
        self.asked = []

    def _next(self, kind, message):
        self.asked.append((kind, message))
        if not self.answers[kind]:
            raise AssertionError(f"unexpected {kind} prompt: {message}")
        return self.answers[kind].pop(0)

    def select(self, message, choices, default=None):
        return self._next("select", message)

    def text(self, message, default="", validate=None, invalid_message=""):
        return self._next("text", message)

    def secret(self, message, validate=None, invalid_message=""):
        return self._next("secret", message)

    def confirm(self, message, default=False):
        return self._next("confirm", message)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "mnt"
    path.mkdir()
    return path


@pytest.fixture
def config(root):
    return InstallConfig(
        disk="/dev/vdb",
        username="testuser",
        hostname="testhost",
        ubuntu_version="24.04",
        root_mount=str(root),
    )


@pytest.fixture
def zoneinfo(tmp_path):
    zone_dir = tmp_path / "zoneinfo"
    (zone_dir / "America").mkdir(parents=True)
    (zone_dir / "America" / "Chicago").write_text("TZif")
    (zone_dir / "UTC").write_text("TZif")
    return zone_dir


@pytest.fixture
def kernel(root):
    boot = root / "boot"
    boot.mkdir(exist_ok=True)
    for name in ("vmlinuz-6.8.0-45-generic", "initrd.img-6.8.0-45-generic",
                 "vmlinuz-6.8.0-9-generic", "initrd.img-6.8.0-9-generic"):
        (boot / name).write_text(name)
    return "6.8.0-45-generic"
