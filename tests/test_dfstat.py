import pytest

from falconagent import dfstat
from falconagent.config import CollectorConfig, GlobalConfig, config, set_config

MOUNTS = """rootfs / rootfs rw 0 0
proc /proc proc rw,nosuid 0 0
sysfs /sys sysfs rw 0 0
tmpfs /run tmpfs rw 0 0
/dev/sda1 /data/bind ext4 rw 0 0
/dev/sda1 / ext4 rw,relatime 0 0
/dev/sdb1 /home xfs rw 0 0
server:/export /mnt/nfs nfs4 rw 0 0
"""


@pytest.fixture
def restore_config():
    saved = config()
    yield
    set_config(saved)


def test_parse_mounts_filters_and_dedups():
    assert dfstat.parse_mounts(MOUNTS) == [
        ("/dev/sda1", "/", "ext4"),
        ("/dev/sdb1", "/home", "xfs"),
        ("server:/export", "/mnt/nfs", "nfs4"),
    ]


def test_parse_mounts_empty():
    assert dfstat.parse_mounts("") == []


def test_list_mount_points_missing(tmp_path, monkeypatch):
    monkeypatch.setattr(dfstat, "MOUNTS_PATH", str(tmp_path / "absent"))
    with pytest.raises(OSError):
        dfstat.list_mount_points()


def test_build_device_usage_invariants(tmp_path):
    du = dfstat.build_device_usage("/dev/fake", str(tmp_path), "ext4")
    assert du.fs_spec == "/dev/fake"
    assert du.fs_file == str(tmp_path)
    assert du.fs_vfstype == "ext4"
    assert 0 <= du.blocks_used <= du.blocks_all
    assert du.blocks_free <= du.blocks_all
    assert du.blocks_used_percent + du.blocks_free_percent == pytest.approx(100.0)
    assert du.inodes_used + du.inodes_free <= du.inodes_all or du.inodes_all == 0


def test_build_device_usage_missing_path(tmp_path):
    with pytest.raises(OSError):
        dfstat.build_device_usage("/dev/fake", str(tmp_path / "absent"), "ext4")


def test_device_metrics_for_configured_mount(tmp_path, monkeypatch, restore_config):
    mounts = tmp_path / "mounts"
    target = tmp_path / "mnt"
    target.mkdir()
    mounts.write_text(f"/dev/sdz1 {target} ext4 rw 0 0\n/dev/sdy1 /elsewhere xfs rw 0 0\n")
    monkeypatch.setattr(dfstat, "MOUNTS_PATH", str(mounts))
    set_config(GlobalConfig(collector=CollectorConfig(mount_point=[str(target)])))

    metrics = dfstat.device_metrics()
    tagged = [mv for mv in metrics if mv.tags]
    assert {mv.tags for mv in tagged} == {f"mount={target},fstype=ext4"}
    names = [mv.metric for mv in metrics]
    assert names[:5] == [
        "df.bytes.total",
        "df.bytes.used",
        "df.bytes.free",
        "df.bytes.used.percent",
        "df.bytes.free.percent",
    ]
    assert names[-3:] == [
        "df.statistics.total",
        "df.statistics.used",
        "df.statistics.used.percent",
    ]
    by_name = {mv.metric: mv.value for mv in metrics}
    assert by_name["df.statistics.total"] == float(by_name["df.bytes.total"])
    assert by_name["df.statistics.used"] == float(by_name["df.bytes.used"])


def test_device_metrics_skips_unreadable_mounts(tmp_path, monkeypatch, restore_config):
    mounts = tmp_path / "mounts"
    mounts.write_text(f"/dev/sdz1 {tmp_path / 'absent'} ext4 rw 0 0\n")
    monkeypatch.setattr(dfstat, "MOUNTS_PATH", str(mounts))
    set_config(GlobalConfig())
    assert dfstat.device_metrics() == []


def test_device_metrics_without_mount_table(tmp_path, monkeypatch):
    monkeypatch.setattr(dfstat, "MOUNTS_PATH", str(tmp_path / "absent"))
    assert dfstat.device_metrics() == []


def test_device_metrics_check(tmp_path, monkeypatch):
    mounts = tmp_path / "mounts"
    monkeypatch.setattr(dfstat, "MOUNTS_PATH", str(mounts))
    assert dfstat.device_metrics_check() is False
    mounts.write_text("proc /proc proc rw 0 0\n")
    assert dfstat.device_metrics_check() is False
    mounts.write_text(MOUNTS)
    assert dfstat.device_metrics_check() is True