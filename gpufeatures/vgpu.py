"""Labeler reporting vGPU presence and host driver details.

A vGPU library offers ``devices()``; each device offers ``info()`` returning
an object with ``host_driver_version`` and ``host_driver_branch``.
"""

from __future__ import annotations

import logging

from gpufeatures.labels import LabelError, Labels

log = logging.getLogger(__name__)


class VGPULabeler:
    """Generates the vGPU labels for a node."""

    def __init__(self, lib) -> None:
        self.lib = lib

    def labels(self) -> Labels:
        try:
            devices = list(self.lib.devices())
        except Exception:  # noqa: BLE001 - vGPU discovery failures are non-fatal
            log.exception("unable to get vGPU devices")
            return Labels()

        labels = Labels({"nvidia.com/vgpu.present": "true" if devices else "false"})
        for device in devices:
            try:
                info = device.info()
            except Exception as err:
                raise LabelError(f"error getting vGPU device info: {err}") from err
            labels["nvidia.com/vgpu.host-driver-version"] = info.host_driver_version
            labels["nvidia.com/vgpu.host-driver-branch"] = info.host_driver_branch
        return labels


def new_vgpu_labeler(lib) -> VGPULabeler:
    """Create a vGPU labeler backed by the given library."""
    return VGPULabeler(lib)