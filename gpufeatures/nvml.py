"""Node-level GPU labelers: driver versions, MIG and MPS capability, GPU mode.

A manager offers ``init()``, ``shutdown()``, ``devices()``,
``driver_version()`` and ``cuda_driver_version()`` returning
``(major, minor)``. A device offers ``is_mig_capable()``,
``is_mig_enabled()`` and ``pci_class()``, besides what
:mod:`gpufeatures.resource` needs.

A config offers ``flags.gfd.machine_type_file``, ``flags.mig_strategy`` and
``sharing``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

from gpufeatures.labels import (
    Empty,
    LabelError,
    Labels,
    merge,
    new_machine_type_labeler,
)
from gpufeatures.migstrategy import new_resource_labeler

log = logging.getLogger(__name__)

PCI_VGA_CONTROLLER_CLASS = 0x030000
PCI_3D_CONTROLLER_CLASS = 0x030200
SHARING_STRATEGY_MPS = "mps"


class MPSSharingNotSupportedError(LabelError):
    """Raised when MPS sharing is requested where it cannot be used."""


@contextmanager
def _wrapped(message: str):
    try:
        yield
    except MPSSharingNotSupportedError as err:
        raise MPSSharingNotSupportedError(f"{message}: {err}") from err
    except Exception as err:
        raise LabelError(f"{message}: {err}") from err


def _bool_text(value: bool) -> str:
    return "true" if value else "false"


def new_device_labeler(manager, config):
    """Create the labeler for all GPU devices known to the manager."""
    with _wrapped("failed to initialize resource manager"):
        manager.init()
    try:
        with _wrapped("error getting devices"):
            devices = manager.devices()
        if not devices:
            return Empty()

        machine_type = new_machine_type_labeler(config.flags.gfd.machine_type_file)
        with _wrapped("failed to construct version labeler"):
            version = new_version_labeler(manager)
        with _wrapped("error creating mig capability labeler"):
            mig_capability = new_mig_capability_labeler(manager)
        with _wrapped("error creating sharing labeler"):
            sharing = new_sharing_labeler(manager, config)
        with _wrapped("error creating resource labeler"):
            resource = new_resource_labeler(manager, config)
        with _wrapped("error creating resource labeler"):
            gpu_mode = new_gpu_mode_labeler(devices)

        return merge(machine_type, version, mig_capability, sharing, resource, gpu_mode)
    finally:
        try:
            manager.shutdown()
        except Exception:  # noqa: BLE001 - shutdown failures are ignored
            pass


def new_version_labeler(manager) -> Labels:
    """Create the CUDA driver and runtime version labels."""
    with _wrapped("error getting driver version"):
        driver_version = manager.driver_version()

    parts = driver_version.split(".")
    if not 2 <= len(parts) <= 3:
        raise LabelError(
            f'error getting driver version: Version "{driver_version}" '
            'does not match format "X.Y[.Z]"'
        )
    driver_major, driver_minor = parts[0], parts[1]
    driver_rev = parts[2] if len(parts) > 2 else ""

    with _wrapped("error getting cuda driver version"):
        cuda_major, cuda_minor = manager.cuda_driver_version()

    return Labels(
        {
            # Deprecated labels
            "nvidia.com/cuda.driver.major": driver_major,
            "nvidia.com/cuda.driver.minor": driver_minor,
            "nvidia.com/cuda.driver.rev": driver_rev,
            "nvidia.com/cuda.runtime.major": str(cuda_major),
            "nvidia.com/cuda.runtime.minor": str(cuda_minor),
            # Current labels
            "nvidia.com/cuda.driver-version.major": driver_major,
            "nvidia.com/cuda.driver-version.minor": driver_minor,
            "nvidia.com/cuda.driver-version.revision": driver_rev,
            "nvidia.com/cuda.driver-version.full": driver_version,
            "nvidia.com/cuda.runtime-version.major": str(cuda_major),
            "nvidia.com/cuda.runtime-version.minor": str(cuda_minor),
            "nvidia.com/cuda.runtime-version.full": f"{cuda_major}.{cuda_minor}",
        }
    )


def new_mig_capability_labeler(manager):
    """Create the mig.capable label; true if any GPU on the node is MIG capable."""
    devices = manager.devices()
    if not devices:
        return Empty()

    with _wrapped("error getting mig capability"):
        capable = any(device.is_mig_capable() for device in devices)

    return Labels({"nvidia.com/mig.capable": _bool_text(capable)})


def new_sharing_labeler(manager, config) -> Labels:
    """Create the mps.capable label from the sharing configuration."""
    if config is None or config.sharing.sharing_strategy() != SHARING_STRATEGY_MPS:
        return Labels({"nvidia.com/mps.capable": "false"})

    with _wrapped("failed to check MPS-capable"):
        capable = is_mps_capable(manager)

    return Labels({"nvidia.com/mps.capable": _bool_text(capable)})


def is_mps_capable(manager) -> bool:
    """Return True if MPS may be used; raise if any device has MIG enabled."""
    with _wrapped("failed to get device"):
        devices = manager.devices()

    for device in devices:
        with _wrapped("failed to check if device is MIG-enabled"):
            enabled = device.is_mig_enabled()
        if enabled:
            raise MPSSharingNotSupportedError("MPS sharing is not supported for mig devices")
    return True


def new_gpu_mode_labeler(devices) -> Labels:
    """Create the gpu.mode label: graphics, compute or unknown."""
    classes = get_device_classes(devices)
    return Labels({"nvidia.com/gpu.mode": get_mode_for_classes(classes)})


def get_mode_for_classes(classes) -> str:
    """Map a set of PCI classes to a GPU mode."""
    if not classes:
        return "unknown"
    first = classes[0]
    if any(cls != first for cls in classes):
        log.info(
            "Not all GPU devices belong to the same class %s",
            ", ".join(f"{cls:#06x}" for cls in classes),
        )
        return "unknown"
    if first == PCI_VGA_CONTROLLER_CLASS:
        return "graphics"
    if first == PCI_3D_CONTROLLER_CLASS:
        return "compute"
    return "unknown"


def get_device_classes(devices) -> list[int]:
    """Return the distinct PCI classes of the devices, in first-seen order."""
    return list(dict.fromkeys(device.pci_class() for device in devices))