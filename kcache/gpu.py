"""Module that detects the accelerators of a node."""

from __future__ import annotations

import collections
from dataclasses import dataclass, field
import os
import platform
import re
from typing import Dict, List, Tuple

from kcache.logger import log

# PCI vendor ids of GPU vendors
VENDORS = {
    "0x1002": "AMD",
    "0x10de": "NVIDIA",
    "0x8086": "Intel",
}

# Reported as the single group when no GPUs are found
NONE_DETECTED = "None Detected"


@dataclass
class GpuGroup:
    """Group of identical GPUs using the same driver version."""

    gpu_type: str
    driver_version: str = ""
    ids: List[int] = field(default_factory=list)


# Inventory reported in stub mode, for nodes without GPUs
STUB_GROUPS = (
    GpuGroup(
        gpu_type="STUBBED Aldebaran/MI200 [Instinct MI210]",
        driver_version="6.12.10-100.fc40.x86_64",
        ids=[0, 1],
    ),
)


def detect_gpus(no_gpu: bool = False, sysfs_root: str = "/sys") -> List[GpuGroup]:
    """
    Detect the GPUs of this node, grouped by product and driver version.

    DRM devices in sysfs are inspected to find the GPUs. In stub mode a fixed inventory
    is returned instead. If no GPUs are found, a single group indicating that is
    returned so that an empty inventory can be told apart from one that was never
    detected.
    """
    if no_gpu:
        groups = [
            GpuGroup(g.gpu_type, g.driver_version, list(g.ids)) for g in STUB_GROUPS
        ]
        log.info(f"detected stubbed GPU devices: {groups}")
        return groups

    grouped: Dict[Tuple[str, str], List[int]] = collections.defaultdict(list)
    drm_path = os.path.join(sysfs_root, "class", "drm")

    try:
        cards = os.listdir(drm_path)
    except FileNotFoundError:
        cards = []

    for card in cards:
        match = re.fullmatch(r"card(\d+)", card)
        if not match:
            continue

        device_path = os.path.join(drm_path, card, "device")
        gpu_type = _product_name(device_path)
        driver_version = _driver_version(device_path, sysfs_root)

        grouped[(gpu_type, driver_version)].append(int(match.group(1)))

    groups = [
        GpuGroup(gpu_type, driver_version, sorted(ids))
        for (gpu_type, driver_version), ids in sorted(grouped.items())
    ]

    if not groups:
        log.info("no GPU devices detected")
        return [GpuGroup(gpu_type=NONE_DETECTED)]

    log.info(f"detected GPU devices: {groups}")
    return groups


def _read_attribute(path: str) -> str:
    try:
        with open(path, "r") as f:
            return f.read().strip()
    except OSError:
        return ""


def _product_name(device_path: str) -> str:
    """Determine a descriptive name of a GPU from its sysfs attributes."""
    product = _read_attribute(os.path.join(device_path, "product_name"))
    if product:
        return product

    vendor = _read_attribute(os.path.join(device_path, "vendor"))
    device = _read_attribute(os.path.join(device_path, "device"))

    return f"{VENDORS.get(vendor, vendor or 'Unknown')} {device}".strip()


def _driver_version(device_path: str, sysfs_root: str) -> str:
    """
    Determine the version of the driver bound to a GPU.

    In-tree drivers have no version of their own, so the kernel release is used.
    """
    driver_link = os.path.join(device_path, "driver")

    if os.path.exists(driver_link):
        driver = os.path.basename(os.path.realpath(driver_link))
        version = _read_attribute(os.path.join(sysfs_root, "module", driver, "version"))

        if version:
            return version

    return platform.release()
