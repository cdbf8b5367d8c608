import pytest

from ubuntu_zfs_installer.errors import InstallerError
from ubuntu_zfs_installer.preflight import HOST_PACKAGES, Preflight, is_ubuntu

UBUNTU_RELEASE = 'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="24.04"\nVERSION_CODENAME=noble\n'
INSTALLED = "Package: x\nStatus: install ok installed\n"


@pytest.fixture
def host(tmp_path):
    efi = tmp_path / "efi"
    (efi / "efivars").mkdir(parents=True)
    (efi / "efivars" / "BootOrder-8be4df61").write_text("")
    os_release = tmp_path / "os-release"
    os_release.write_text(UBUNTU_RELEASE)
    modules = tmp_path / "modules"
    modules.write_text("zfs 6160384 6 - Live 0x0000000000000000 (PO)\nspl 131072 1 zfs, Live 0x0\n")
    return tmp_path


def make_preflight(runner, host, euid=0):
    return Preflight(
        runner,
        efi_dir=str(host / "efi"),
        os_release_path=str(host / "os-release"),
        proc_modules=str(host / "modules"),
        geteuid=lambda: euid,
    )


def test_full_run_on_prepared_host(runner, host):
    runner.respond(["dpkg", "-s"], out=INSTALLED)

    version, os_release = make_preflight(runner, host).run()

    assert version == "24.04"
    assert os_release["VERSION_CODENAME"] == "noble"
    assert not runner.called("apt-get")
    assert not runner.called("modprobe")


def test_requested_version_overrides_running(runner, host):
    version, _ = make_preflight(runner, host).detect_version("22.04")
    assert version == "22.04"


def test_requires_root(runner, host):
    with pytest.raises(InstallerError) as exc:
        make_preflight(runner, host, euid=1000).run()
    assert exc.value.code == "E001"
    assert exc.value.exit_code == 1


def test_requires_uefi(runner, host):
    (host / "efi" / "efivars" / "BootOrder-8be4df61").unlink()
    with pytest.raises(InstallerError) as exc:
        make_preflight(runner, host).check_uefi()
    assert exc.value.code == "E003"

    preflight = make_preflight(runner, host)
    preflight.efi_dir = str(host / "no-efi")
    with pytest.raises(InstallerError) as exc:
        preflight.check_uefi()
    assert exc.value.code == "E002"


def test_rejects_non_ubuntu_host(runner, host):
    (host / "os-release").write_text('ID=fedora\nVERSION_ID="40"\nPRETTY_NAME="Fedora Linux 40"\n')

    with pytest.raises(InstallerError) as exc:
        make_preflight(runner, host).detect_version()
    assert exc.value.code == "E004"

    version, _ = make_preflight(runner, host).detect_version("24.04", strict=False)
    assert version == "24.04"


def test_derivatives_count_as_ubuntu():
    assert is_ubuntu({"ID": "pop", "ID_LIKE": "ubuntu debian"})
    assert not is_ubuntu({"ID": "debian"})


def test_missing_packages_are_installed(runner, host):
    runner.respond(["dpkg", "-s"], out=INSTALLED)
    runner.respond(["dpkg", "-s", "debootstrap"], rc=1)
    runner.respond(["apt-get", "update"], rc=100)

    make_preflight(runner, host).install_dependencies()

    assert len(runner.matching("apt-get", "update")) == 3
    assert runner.sleeps == [5, 5]
    assert runner.called("apt-get", "install", "-y", "debootstrap")


def test_package_install_failure_is_fatal(runner, host):
    runner.respond(["dpkg", "-s"], rc=1)
    runner.respond(["apt-get", "install"], rc=100)

    with pytest.raises(InstallerError) as exc:
        make_preflight(runner, host).install_dependencies()

    assert exc.value.code == "E005"
    assert "debootstrap" in exc.value.detail
    assert len(runner.matching("apt-get", "install", "-y")) == 1
    assert runner.matching("apt-get", "install", "-y")[0][3:] == HOST_PACKAGES


def test_zfs_module_is_loaded_when_missing(runner, host):
    (host / "modules").write_text("ext4 1 0 - Live 0x0\n")

    make_preflight(runner, host).load_zfs_module()

    assert runner.called("modprobe", "zfs")


def test_modprobe_failure_is_fatal(runner, host):
    (host / "modules").write_text("")
    runner.respond(["modprobe"], rc=1)

    with pytest.raises(InstallerError) as exc:
        make_preflight(runner, host).load_zfs_module()

    assert exc.value.code == "E006"
