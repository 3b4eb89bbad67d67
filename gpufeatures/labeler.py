"""Construction of the complete set of node labelers."""

from __future__ import annotations

from gpufeatures.labels import LabelError, merge
from gpufeatures.nvml import new_device_labeler
from gpufeatures.vgpu import new_vgpu_labeler


def new_labelers(manager, vgpu, config):
    """Create the device and vGPU labelers as one composite labeler."""
    try:
        device_labeler = new_device_labeler(manager, config)
    except Exception as err:
        raise LabelError(f"error creating labeler: {err}") from err
    return merge(device_labeler, new_vgpu_labeler(vgpu))