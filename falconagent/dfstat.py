"""File system usage of mounted devices."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from falconagent.config import config
from falconagent.model import MetricValue, gauge_value

log = logging.getLogger(__name__)

MOUNTS_PATH = "/proc/mounts"

FSSPEC_IGNORE = frozenset({"none", "nodev", "proc", "hugetlbfs", "mqueue"})
FSTYPE_IGNORE = frozenset(
    {
        "cgroup",
        "debugfs",
        "devpts",
        "devtmpfs",
        "rpc_pipefs",
        "rootfs",
        "overlay",
        "tmpfs",
    }
)
FSFILE_PREFIX_IGNORE = ("/sys", "/net", "/misc", "/proc", "/lib")

_UNLIMITED = 2**64 - 1


@dataclass(frozen=True)
class DeviceUsage:
    """Block and inode usage of one mounted file system."""

    fs_spec: str
    fs_file: str
    fs_vfstype: str
    blocks_all: int = 0
    blocks_used: int = 0
    blocks_free: int = 0
    blocks_used_percent: float = 0.0
    blocks_free_percent: float = 0.0
    inodes_all: int = 0
    inodes_used: int = 0
    inodes_free: int = 0
    inodes_used_percent: float = 0.0
    inodes_free_percent: float = 0.0


def parse_mounts(text: str) -> list[tuple[str, str, str]]:
    """Parse /proc/mounts into (spec, mount point, type), skipping pseudo file systems.

    A device mounted more than once is kept once, with its shortest mount point.
    """
    result: list[tuple[str, str, str]] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 3:
            continue
        fs_spec, fs_file, fs_vfstype = parts[0], parts[1], parts[2]
        if fs_spec in FSSPEC_IGNORE or fs_vfstype in FSTYPE_IGNORE:
            continue
        if fs_file.startswith(FSFILE_PREFIX_IGNORE):
            continue
        if fs_spec.startswith("/dev"):
            found = next((i for i, mp in enumerate(result) if mp[0] == fs_spec), None)
            if found is not None:
                if len(fs_file) < len(result[found][1]):
                    result[found] = (fs_spec, fs_file, result[found][2])
                continue
        result.append((fs_spec, fs_file, fs_vfstype))
    return result


def list_mount_points() -> list[tuple[str, str, str]]:
    """Read the mount table."""
    with open(MOUNTS_PATH, encoding="utf-8") as handle:
        return parse_mounts(handle.read())


def build_device_usage(fs_spec: str, fs_file: str, fs_vfstype: str) -> DeviceUsage:
    """Measure a mounted file system; raise OSError if it cannot be queried."""
    st = os.statvfs(fs_file)
    used = st.f_blocks - st.f_bfree
    if st.f_blocks == 0 or used + st.f_bavail == 0:
        blocks_used_percent, blocks_free_percent = 100.0, 0.0
    else:
        blocks_used_percent = used * 100.0 / (used + st.f_bavail)
        blocks_free_percent = 100.0 - blocks_used_percent
    if st.f_ffree == _UNLIMITED:
        inodes_free = inodes_used = 0
    else:
        inodes_free = st.f_ffree
        inodes_used = st.f_files - st.f_ffree
    if st.f_files == 0:
        inodes_used_percent, inodes_free_percent = 100.0, 0.0
    else:
        inodes_used_percent = inodes_used * 100.0 / st.f_files
        inodes_free_percent = 100.0 - inodes_used_percent
    return DeviceUsage(
        fs_spec=fs_spec,
        fs_file=fs_file,
        fs_vfstype=fs_vfstype,
        blocks_all=st.f_frsize * st.f_blocks,
        blocks_used=st.f_frsize * used,
        blocks_free=st.f_frsize * st.f_bavail,
        blocks_used_percent=blocks_used_percent,
        blocks_free_percent=blocks_free_percent,
        inodes_all=st.f_files,
        inodes_used=inodes_used,
        inodes_free=inodes_free,
        inodes_used_percent=inodes_used_percent,
        inodes_free_percent=inodes_free_percent,
    )


def device_metrics() -> list[MetricValue]:
    """Space and inode usage of every mount point, plus overall totals."""
    try:
        mount_points = list_mount_points()
    except OSError as exc:
        log.error("collect device metrics fail: %s", exc)
        return []
    wanted = set(config().collector.mount_point)
    result: list[MetricValue] = []
    disk_total = disk_used = 0
    for fs_spec, fs_file, fs_vfstype in mount_points:
        if wanted and fs_file not in wanted:
            log.debug("mount point not matched with config %s ignored.", fs_file)
            continue
        try:
            du = build_device_usage(fs_spec, fs_file, fs_vfstype)
        except OSError as exc:
            log.error("%s", exc)
            continue
        if du.blocks_all == 0:
            continue
        disk_total += du.blocks_all
        disk_used += du.blocks_used
        tags = f"mount={du.fs_file},fstype={du.fs_vfstype}"
        result.extend(
            [
                gauge_value("df.bytes.total", du.blocks_all, tags),
                gauge_value("df.bytes.used", du.blocks_used, tags),
                gauge_value("df.bytes.free", du.blocks_free, tags),
                gauge_value("df.bytes.used.percent", du.blocks_used_percent, tags),
                gauge_value("df.bytes.free.percent", du.blocks_free_percent, tags),
            ]
        )
        if du.inodes_all == 0:
            continue
        result.extend(
            [
                gauge_value("df.inodes.total", du.inodes_all, tags),
                gauge_value("df.inodes.used", du.inodes_used, tags),
                gauge_value("df.inodes.free", du.inodes_free, tags),
                gauge_value("df.inodes.used.percent", du.inodes_used_percent, tags),
                gauge_value("df.inodes.free.percent", du.inodes_free_percent, tags),
            ]
        )
    if result and disk_total > 0:
        result.extend(
            [
                gauge_value("df.statistics.total", float(disk_total)),
                gauge_value("df.statistics.used", float(disk_used)),
                gauge_value("df.statistics.used.percent", disk_used * 100.0 / disk_total),
            ]
        )
    return result


def device_metrics_check() -> bool:
    """Tell whether any mount point can be listed."""
    try:
        mount_points = list_mount_points()
    except OSError as exc:
        log.error("collect device metrics fail: %s", exc)
        return False
    return len(mount_points) > 0