import pytest

from ubuntu_zfs_installer.errors import InstallerError
from ubuntu_zfs_installer.state import Stage, StateStore, parse_state


def test_save_overwrites_existing_key(tmp_path):
    path = tmp_path / "state"
    store = StateStore(str(path))

    store.save("X", "1")
    store.save("X", "2")

    lines = [line for line in path.read_text().splitlines() if line.startswith("X=")]
    assert lines == ["X=2"]
    assert store.get("X") == "2"


def test_save_keeps_other_keys_in_place(tmp_path):
    path = tmp_path / "state"
    store = StateStore(str(path))
    store.save("DISK_PREPARED", "true")
    store.save("DISK", "/dev/vdb")
    store.save("DISK_PREPARED", "true")

    assert path.read_text() == "DISK_PREPARED=true\nDISK=/dev/vdb\n"


def test_save_collapses_duplicates_from_older_runs(tmp_path):
    path = tmp_path / "state"
    path.write_text("ZFS_CREATED=false\nDISK=/dev/sda\nZFS_CREATED=false\n")

    StateStore(str(path)).save("ZFS_CREATED", "true")

    assert path.read_text() == "ZFS_CREATED=true\nDISK=/dev/sda\n"


def test_load_restores_flags_last_write_wins(tmp_path):
    path = tmp_path / "state"
    path.write_text("DISK_PREPARED=false\n# comment\n\nDISK_PREPARED=true\n")

    store = StateStore(str(path))
    store.load()

    assert store.is_done(Stage.DISK_PREPARED)
    assert not store.is_done(Stage.ZFS_CREATED)


def test_load_without_file_is_empty(tmp_path):
    store = StateStore(str(tmp_path / "missing"))
    assert store.load() == {}
    assert store.pending() == list(Stage)


@pytest.mark.parametrize("text", ["garbage line\n", "lower=case\n", "=value\n"])
def test_malformed_lines_are_fatal(text):
    with pytest.raises(InstallerError) as exc:
        parse_state(text)
    assert exc.value.code == "E074"
    assert exc.value.exit_code == 74


def test_flag_values_must_be_boolean():
    with pytest.raises(InstallerError) as exc:
        parse_state("ZFS_CREATED=yes\n")
    assert exc.value.code == "E074"


def test_non_flag_keys_accept_any_value():
    values = parse_state("EFI_PARTITION=/dev/nvme0n1p1\nMIRROR=http://x/ubuntu\n")
    assert values["EFI_PARTITION"] == "/dev/nvme0n1p1"
    assert values["MIRROR"] == "http://x/ubuntu"


def test_save_rejects_invalid_entries(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    with pytest.raises(InstallerError) as exc:
        store.save("bad key", "x")
    assert exc.value.code == "E073"
    with pytest.raises(InstallerError):
        store.save("KEY", "two\nlines")


def test_mark_done_persists_flag(tmp_path):
    path = tmp_path / "state"
    store = StateStore(str(path))
    store.mark_done(Stage.BASE_INSTALLED)

    reloaded = StateStore(str(path))
    reloaded.load()
    assert reloaded.is_done(Stage.BASE_INSTALLED)
    assert reloaded.completed() == [Stage.BASE_INSTALLED]


def test_order_gaps_reports_skipped_earlier_stages(tmp_path):
    path = tmp_path / "state"
    path.write_text("DISK_PREPARED=true\nBASE_INSTALLED=true\n")
    store = StateStore(str(path))
    store.load()

    assert store.order_gaps() == [Stage.ZFS_CREATED]


def test_order_gaps_empty_for_ordered_state(tmp_path):
    path = tmp_path / "state"
    path.write_text("DISK_PREPARED=true\nZFS_CREATED=true\n")
    store = StateStore(str(path))
    store.load()

    assert store.order_gaps() == []


def test_reset_removes_file(tmp_path):
    path = tmp_path / "state"
    store = StateStore(str(path))
    store.save("DISK_PREPARED", "true")

    store.reset()

    assert not path.exists()
    assert store.values == {}


def test_stage_order_and_actions():
    assert [stage.action for stage in Stage] == [
        "prepare_disk",
        "create_zfs_pool",
        "install_base_system",
        "configure_system",
        "install_zectl",
        "install_systemd_boot",
        "finalize_installation",
    ]
    assert Stage.DISK_PREPARED < Stage.INSTALLATION_COMPLETE
