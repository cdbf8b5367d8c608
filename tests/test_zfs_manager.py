import os
import stat
from dataclasses import replace

import pytest

from conftest import FakeRunner
from ubuntu_zfs_installer.errors import InstallerError
from ubuntu_zfs_installer.zfs_manager import ZFSManager, key_file_path, pool_options


def pool_create_cmd(runner):
    (cmd,) = runner.matching("zpool", "create")
    return cmd


def test_pool_options_fixed_property_set(config):
    opts = pool_options(config)

    assert opts[opts.index("-R") + 1] == config.root_mount
    for prop in ("ashift=12", "autotrim=on"):
        assert opts[opts.index(prop) - 1] == "-o"
    for prop in ("acltype=posixacl", "canmount=off", "compression=lz4", "dnodesize=auto",
                 "normalization=formD", "atime=off", "xattr=sa", "mountpoint=/"):
        assert opts[opts.index(prop) - 1] == "-O"
    assert not any(opt.startswith("encryption=") for opt in opts)
    assert "relatime=on" not in opts


def test_pool_options_tuning(config):
    config = replace(config, zfs_ashift=13, zfs_compression="zstd", zfs_atime="on", zfs_recordsize="1M")
    opts = pool_options(config)

    assert "ashift=13" in opts
    assert "compression=zstd" in opts
    assert "relatime=on" in opts
    assert "recordsize=1M" in opts


def test_encrypted_pool_reads_passphrase_from_stdin(config, runner):
    config = replace(config, encryption=True, passphrase="correct horse")

    ZFSManager(runner).create_pool(config, "/dev/vdb3")

    cmd = pool_create_cmd(runner)
    assert cmd[-2:] == ["rpool", "/dev/vdb3"]
    assert "encryption=aes-256-gcm" in cmd
    assert "keylocation=prompt" in cmd
    assert "keyformat=passphrase" in cmd
    assert runner.inputs[runner.calls.index(cmd)] == "correct horse\n"
    assert not any("correct horse" in part for part in cmd)


def test_keyfile_delivery_writes_private_key(config, runner, tmp_path):
    key_dir = tmp_path / "zfs"
    config = replace(config, encryption=True, passphrase="correct horse", key_delivery="keyfile")

    ZFSManager(runner, key_dir=str(key_dir)).create_pool(config, "/dev/vdb3")

    path = key_file_path("rpool", str(key_dir))
    assert open(path).read() == "correct horse"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    cmd = pool_create_cmd(runner)
    assert f"keylocation=file://{path}" in cmd
    assert runner.inputs[runner.calls.index(cmd)] is None


def test_missing_partition_is_fatal(config):
    runner = FakeRunner(block_devices=set())

    with pytest.raises(InstallerError) as exc:
        ZFSManager(runner).create_pool(config, "/dev/vdb3")

    assert exc.value.code == "E015"
    assert not runner.called("zpool", "create")


def test_pool_creation_failure(config, runner):
    runner.respond(["zpool", "create"], rc=1, err="pool already exists")

    with pytest.raises(InstallerError) as exc:
        ZFSManager(runner).create_pool(config, "/dev/vdb3")

    assert exc.value.code == "E020"
    assert exc.value.exit_code == 20


def test_datasets_created_and_root_mounted_first(config, runner):
    created = ZFSManager(runner).create_datasets(config)

    assert created["root"] == "rpool/ROOT/ubuntu"
    assert created["home"] == "rpool/home"
    assert runner.called("zfs", "create", "-o", "canmount=off", "-o", "mountpoint=none", "rpool/ROOT")
    assert runner.called("zfs", "create", "-o", "canmount=noauto", "-o", "mountpoint=/", "rpool/ROOT/ubuntu")
    assert runner.called("zpool", "set", "bootfs=rpool/ROOT/ubuntu", "rpool")
    assert runner.index_of("zfs", "mount", "rpool/ROOT/ubuntu") < runner.index_of(
        "zfs", "create", "-o", "canmount=on", "-o", "mountpoint=/home", "rpool/home")


def test_auxiliary_dataset_failure_is_tolerated(config, runner):
    runner.respond(["zfs", "create", "-o", "canmount=on", "rpool/var/log"], rc=1)

    created = ZFSManager(runner).create_datasets(config)

    assert "var/log" not in created
    assert "var/tmp" in created


def test_root_dataset_failure_is_fatal(config, runner):
    runner.respond(["zfs", "create", "-o", "canmount=noauto"], rc=1)

    with pytest.raises(InstallerError) as exc:
        ZFSManager(runner).create_datasets(config)

    assert exc.value.code == "E021"
    assert not runner.called("zpool", "set")


def test_mounted_root_dataset_is_not_remounted(config, runner):
    runner.respond(["zfs", "get", "-H", "-o", "value", "mounted", "rpool/ROOT/ubuntu"], out="yes\n")

    ZFSManager(runner).mount_root_dataset(config)

    assert not runner.called("zfs", "mount")


def test_mount_esp(config, runner, root):
    ZFSManager(runner).mount_esp(config, "/dev/vdb1")

    assert (root / "boot" / "efi").is_dir()
    assert runner.called("mount", "/dev/vdb1", str(root / "boot" / "efi"))


def test_import_loads_key_from_stdin(config, runner):
    config = replace(config, encryption=True, passphrase="pw-for-pool")

    ZFSManager(runner).import_pool(config)

    assert runner.called("zpool", "import", "-N", "-f", "-R", config.root_mount, "rpool")
    (load,) = runner.matching("zfs", "load-key", "rpool")
    assert runner.inputs[runner.calls.index(load)] == "pw-for-pool\n"


def test_import_rewrites_lost_key_file(config, runner, tmp_path):
    key_dir = tmp_path / "live-zfs"
    config = replace(config, encryption=True, passphrase="correct horse", key_delivery="keyfile")

    ZFSManager(runner, key_dir=str(key_dir)).import_pool(config)

    path = key_file_path("rpool", str(key_dir))
    assert open(path).read() == "correct horse"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    (load,) = runner.matching("zfs", "load-key", "rpool")
    assert runner.inputs[runner.calls.index(load)] is None


def test_existing_key_file_is_kept(config, runner, tmp_path):
    key_dir = tmp_path / "live-zfs"
    key_dir.mkdir()
    (key_dir / "rpool.key").write_text("original")
    config = replace(config, encryption=True, passphrase="correct horse", key_delivery="keyfile")

    ZFSManager(runner, key_dir=str(key_dir)).ensure_key_file(config)

    assert (key_dir / "rpool.key").read_text() == "original"


def test_import_failure(config, runner):
    runner.respond(["zpool", "import"], rc=1)

    with pytest.raises(InstallerError) as exc:
        ZFSManager(runner).import_pool(config)

    assert exc.value.code == "E024"


def test_export_falls_back_to_force(runner):
    runner.respond(["zpool", "export", "rpool"], rc=1, err="pool is busy")

    assert ZFSManager(runner).export_pool("rpool")
    assert runner.called("zpool", "export", "-f", "rpool")


def test_export_failure_after_force(runner):
    runner.respond(["zpool", "export"], rc=1, err="pool is busy")

    with pytest.raises(InstallerError) as exc:
        ZFSManager(runner).export_pool("rpool")

    assert exc.value.code == "E072"


def test_export_skips_pool_that_is_not_imported(runner):
    runner.respond(["zpool", "list"], rc=1)

    assert ZFSManager(runner).export_pool("rpool")
    assert not runner.called("zpool", "export")
