"""MIG device discovery: grouping devices by MIG mode and MIG capability paths.

A manager offers ``devices()``. A device offers ``is_mig_enabled()`` and
``mig_devices()``.
"""

from __future__ import annotations

import logging
import re

log = logging.getLogger(__name__)

NVIDIA_PROC_DRIVER_PATH = "/proc/driver/nvidia"
NVIDIA_CAPABILITIES_PATH = NVIDIA_PROC_DRIVER_PATH + "/capabilities"

NVCAPS_PROC_DRIVER_PATH = "/proc/driver/nvidia-caps"
NVCAPS_MIG_MINORS_PATH = NVCAPS_PROC_DRIVER_PATH + "/mig-minors"
NVCAPS_DEVICE_PATH = "/dev/nvidia-caps"

_INT = r"\s*([+-]?\d+)"
_CI_ACCESS = re.compile(rf"gpu{_INT}/gi{_INT}/ci{_INT}/access\s*{_INT}")
_GI_ACCESS = re.compile(rf"gpu{_INT}/gi{_INT}/access\s*{_INT}")
_CONFIG = re.compile(rf"config\s*{_INT}")
_MONITOR = re.compile(rf"monitor\s*{_INT}")


class DeviceInfo:
    """Information about all devices on a node, split by MIG mode."""

    def __init__(self, manager) -> None:
        self._manager = manager
        self._devices_map: dict[bool, list] | None = None

    def devices_map(self) -> dict[bool, list]:
        """Return devices keyed by whether MIG is enabled; built on first use."""
        if self._devices_map is not None:
            return self._devices_map

        grouped: dict[bool, list] = {}
        for device in self._manager.devices():
            grouped.setdefault(bool(device.is_mig_enabled()), []).append(device)

        self._devices_map = grouped
        return grouped

    def devices_with_mig_enabled(self) -> list:
        return list(self.devices_map().get(True, []))

    def devices_with_mig_disabled(self) -> list:
        return list(self.devices_map().get(False, []))

    def any_mig_enabled_device_is_empty(self) -> bool:
        """Check whether some MIG-enabled device has no MIG devices.

        This holds trivially when there are no MIG-enabled devices.
        """
        enabled = self.devices_map().get(True, [])
        if not enabled:
            return True
        return any(not device.mig_devices() for device in enabled)

    def all_mig_devices(self) -> list:
        """Return the MIG devices of all MIG-enabled devices."""
        return [
            mig
            for device in self.devices_map().get(True, [])
            for mig in device.mig_devices()
        ]


def parse_mig_minor_line(line: str) -> tuple[str, int]:
    """Parse a line of the MIG minors file into (capability path, minor)."""
    if m := _CI_ACCESS.match(line):
        gpu, gi, ci, minor = (int(g) for g in m.groups())
        return f"{NVIDIA_CAPABILITIES_PATH}/gpu{gpu}/mig/gi{gi}/ci{ci}/access", minor
    if m := _GI_ACCESS.match(line):
        gpu, gi, minor = (int(g) for g in m.groups())
        return f"{NVIDIA_CAPABILITIES_PATH}/gpu{gpu}/mig/gi{gi}/access", minor
    if m := _CONFIG.match(line):
        return f"{NVIDIA_CAPABILITIES_PATH}/mig/config", int(m.group(1))
    if m := _MONITOR.match(line):
        return f"{NVIDIA_CAPABILITIES_PATH}/mig/monitor", int(m.group(1))
    raise ValueError(f"unparsable line: {line}")


def get_mig_capability_device_paths(minors_path=NVCAPS_MIG_MINORS_PATH) -> dict[str, str]:
    """Map MIG capability paths to their device node paths.

    A missing minors file means the machine is not MIG capable and yields an
    empty mapping. Unparsable lines are logged and skipped.
    """
    try:
        minors_file = open(minors_path, encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as err:
        raise OSError(f"error opening MIG minors file: {err}") from err

    paths: dict[str, str] = {}
    with minors_file:
        for raw in minors_file:
            line = raw.rstrip("\r\n")
            try:
                cap_path, minor = parse_mig_minor_line(line)
            except ValueError as err:
                log.error("Skipping line in MIG minors file: %s", err)
                continue
            paths[cap_path] = f"{NVCAPS_DEVICE_PATH}/nvidia-cap{minor}"
    return paths