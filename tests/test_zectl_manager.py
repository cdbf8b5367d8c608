import os
from datetime import datetime

import pytest

from ubuntu_zfs_installer.errors import InstallerError
from ubuntu_zfs_installer.zectl_manager import (
    APT_HOOK_PATH,
    APT_SNAPSHOT_SCRIPT_PATH,
    BootEnvironmentManager,
    parse_be_list,
)

LISTING = (
    "ubuntu\tNR\t/\t2024-05-01 10:15\n"
    "pre-upgrade\t-\t-\t2024-06-12 08:00\n"
    "broken\t\t-\tyesterday\n"
)


def test_parse_be_list():
    envs = parse_be_list(LISTING)

    assert [env.name for env in envs] == ["ubuntu", "pre-upgrade", "broken"]
    assert envs[0].active_now and envs[0].active_on_reboot
    assert not envs[1].active_now
    assert envs[1].created_at() == datetime(2024, 6, 12, 8, 0)
    assert envs[2].created_at() is None


def test_parse_be_list_whitespace_and_header():
    envs = parse_be_list("Name Active Mountpoint Creation\ndefault N / 2024-01-02 03:04\n\n")

    assert len(envs) == 1
    assert envs[0].name == "default"
    assert envs[0].mountpoint == "/"
    assert envs[0].created_at() == datetime(2024, 1, 2, 3, 4)


def test_active_boot_environment(runner):
    runner.respond(["zectl", "list", "-H"], out=LISTING)

    assert BootEnvironmentManager(runner).active().name == "ubuntu"


def test_create_with_source_and_description(runner):
    BootEnvironmentManager(runner).create("testing", source="ubuntu", description="try kernel")

    assert runner.calls == [["zectl", "create", "-e", "ubuntu", "-d", "try kernel", "testing"]]


def test_commands_run_inside_staging_root(runner, root):
    manager = BootEnvironmentManager(runner, root=str(root))

    manager.activate("ubuntu")
    manager.destroy("old", force=True)

    assert runner.calls == [
        ["chroot", str(root), "zectl", "activate", "ubuntu"],
        ["chroot", str(root), "zectl", "destroy", "-F", "old"],
    ]


def test_install_builds_with_cmake_then_configures(runner, root):
    BootEnvironmentManager(runner, root=str(root)).install()

    order = [
        runner.index_of("apt-get", "install", "-y", "git"),
        runner.index_of("git", "clone", "--depth", "1"),
        runner.index_of("cmake", "-S", "/tmp/zectl", "-B", "/tmp/zectl/build"),
        runner.index_of("cmake", "--build", "/tmp/zectl/build"),
        runner.index_of("cmake", "--install", "/tmp/zectl/build"),
        runner.index_of("zectl", "set", "bootloader=systemd-boot"),
        runner.index_of("zectl", "set", "systemdboot:efi=/boot/efi"),
    ]
    assert order == sorted(order)


def test_package_index_refresh_retries_before_build(runner, root):
    runner.respond(["apt-get", "update"], rc=100)

    BootEnvironmentManager(runner, root=str(root)).install()

    assert len(runner.matching("apt-get", "update")) == 3
    assert runner.sleeps == [5, 10]
    assert runner.index_of("apt-get", "update") < runner.index_of("apt-get", "install", "-y", "git")
    assert runner.called("cmake", "--install", "/tmp/zectl/build")


def test_build_failure_is_fatal(runner, root):
    runner.respond(["cmake", "--build"], rc=2)

    with pytest.raises(InstallerError) as exc:
        BootEnvironmentManager(runner, root=str(root)).install()

    assert exc.value.code == "E060"
    assert not runner.called("cmake", "--install")


def test_verify_requires_zectl_on_path(runner):
    runner.respond(["sh", "-c", "command -v zectl"], rc=1)

    with pytest.raises(InstallerError) as exc:
        BootEnvironmentManager(runner).verify()

    assert exc.value.code == "E062"


def test_verify_requires_working_zectl(runner):
    runner.respond(["zectl", "list"], rc=1)

    with pytest.raises(InstallerError) as exc:
        BootEnvironmentManager(runner).verify()

    assert exc.value.code == "E061"
    assert exc.value.exit_code == 61


def test_initial_snapshot_failure_is_tolerated(runner):
    runner.respond(["zectl", "snapshot"], rc=1)

    BootEnvironmentManager(runner).initial_snapshot()

    assert runner.called("zectl", "snapshot", "ubuntu@initial")


def test_apt_hooks_installed(runner, root):
    BootEnvironmentManager(runner, root=str(root)).install_apt_hooks(str(root))

    hook = root / APT_HOOK_PATH
    script = root / APT_SNAPSHOT_SCRIPT_PATH
    assert "DPkg::Pre-Invoke" in hook.read_text()
    assert "zectl-apt-snapshot pre" in hook.read_text()
    assert script.read_text().startswith("#!/bin/bash")
    assert os.access(script, os.X_OK)
