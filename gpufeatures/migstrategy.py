"""Resource labelers for full GPUs and for the MIG strategies.

A config offers ``flags.mig_strategy`` and ``sharing``; see
:mod:`gpufeatures.resource` for the sharing and device interfaces.
"""

from __future__ import annotations

import logging
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from gpufeatures.labels import (
    MIG_STRATEGY_MIXED,
    MIG_STRATEGY_NONE,
    MIG_STRATEGY_SINGLE,
    Empty,
    LabelerList,
    LabelError,
    Labels,
    merge,
    mig_strategy_labeler,
)
from gpufeatures.mig import DeviceInfo
from gpufeatures.resource import (
    FULL_GPU_RESOURCE_NAME,
    ResourceLabeler,
    new_gpu_resource_labeler,
    new_gpu_resource_labeler_without_sharing,
    new_mig_resource_labeler,
)

log = logging.getLogger(__name__)


@contextmanager
def _wrapped(message: str):
    try:
        yield
    except Exception as err:
        raise LabelError(f"{message}: {err}") from err


@dataclass
class MigResource:
    """A MIG resource name with a representative device and its count."""

    name: str
    device: Any
    count: int = 0


def new_resource_labeler(manager, config):
    """Create a labeler for full GPU resources and for the MIG strategy in use."""
    with _wrapped("error getting devices"):
        devices = manager.devices()
    if not devices:
        return Empty()

    with _wrapped("failed to construct GPU labeler"):
        full_gpu_labeler = new_gpu_labelers(manager, config)

    if config.flags.mig_strategy == MIG_STRATEGY_NONE:
        return full_gpu_labeler

    with _wrapped("failed to construct MIG resource labeler"):
        mig_labeler = new_mig_labeler(manager, config)

    return merge(full_gpu_labeler, mig_labeler)


def new_mig_labeler(manager, config):
    """Create the labeler for MIG devices under the configured strategy."""
    strategy = config.flags.mig_strategy
    if strategy == MIG_STRATEGY_NONE:
        labeler = Empty()
    elif strategy == MIG_STRATEGY_SINGLE:
        with _wrapped("failed to create labeler for mig-strategy=single"):
            labeler = new_mig_strategy_single_labeler(manager, config)
    elif strategy == MIG_STRATEGY_MIXED:
        with _wrapped("failed to create labeler for mig-strategy=mixed"):
            labeler = new_mig_strategy_mixed_labeler(manager, config)
    else:
        raise LabelError(f"unknown strategy: {strategy}")

    return merge(mig_strategy_labeler(strategy), labeler)


def _devices_by_name(devices, counts: Counter) -> dict[str, Any]:
    by_name: dict[str, Any] = {}
    for device in devices:
        with _wrapped("error getting device name"):
            name = device.name()
        by_name[name] = device
        counts[name] += 1
    return by_name


def new_gpu_labelers(manager, config) -> Labels:
    """Create the labels for full GPUs.

    Labels for full GPUs override those of MIG-enabled GPUs of the same name;
    the latter carry no sharing information.
    """
    info = DeviceInfo(manager)
    with _wrapped("error getting map of devices"):
        by_mig_enabled = info.devices_map()

    if not by_mig_enabled:
        raise LabelError("no GPU devices detected")

    counts: Counter = Counter()
    mig_enabled = _devices_by_name(by_mig_enabled.get(True, []), counts)
    full_gpus = _devices_by_name(by_mig_enabled.get(False, []), counts)

    if len(counts) > 1:
        log.warning("Multiple device types detected: %s", list(counts))

    labelers = LabelerList()
    for name, device in mig_enabled.items():
        with _wrapped("failed to construct labeler"):
            labelers.append(new_gpu_resource_labeler_without_sharing(device, counts[name]))
    for name, device in full_gpus.items():
        with _wrapped("failed to construct labeler"):
            labelers.append(new_gpu_resource_labeler(config, device, counts[name]))

    return labelers.labels()


def _collect_mig_resources(migs, resource_name_for) -> dict[str, MigResource]:
    resources: dict[str, MigResource] = {}
    for mig in migs:
        with _wrapped("unable to get MIG device name"):
            name = mig.name()
        if name not in resources:
            resources[name] = MigResource(name=resource_name_for(name), device=mig)
        resources[name].count += 1
    return resources


def new_mig_strategy_single_labeler(manager, config):
    """Create MIG labels for mig-strategy=single, or invalid labels if unsuitable."""
    info = DeviceInfo(manager)
    with _wrapped("unabled to retrieve list of MIG-enabled devices"):
        enabled = info.devices_with_mig_enabled()
    if not enabled:
        return Empty()

    with _wrapped("failed to check for empty MIG-enabled devices"):
        has_empty = info.any_mig_enabled_device_is_empty()
    if has_empty:
        return new_invalid_mig_strategy_labeler(
            enabled[0], "at least one MIG device is enabled but empty"
        )

    with _wrapped("unabled to retrieve list of non-MIG-enabled devices"):
        disabled = info.devices_with_mig_disabled()
    if disabled:
        return new_invalid_mig_strategy_labeler(
            enabled[0], "devices with MIG enabled and disable detected"
        )

    with _wrapped("unable to retrieve list of MIG devices"):
        migs = info.all_mig_devices()

    resources = _collect_mig_resources(migs, lambda _name: FULL_GPU_RESOURCE_NAME)
    if len(resources) != 1:
        return new_invalid_mig_strategy_labeler(
            enabled[0], "more than one MIG device type present on node"
        )

    return new_mig_device_labelers(resources, config)


def new_invalid_mig_strategy_labeler(device, reason: str) -> Labels:
    """Create the labels that mark an invalid mig-strategy=single setup."""
    log.warning("Invalid configuration detected for mig-strategy=single: %s", reason)

    with _wrapped("failed to get device model"):
        model = device.name()

    labeler = ResourceLabeler(resource_name=FULL_GPU_RESOURCE_NAME)
    labels = labeler.product_label(model, "MIG", "INVALID")
    labeler.update_label(labels, "count", 0)
    labeler.update_label(labels, "replicas", 0)
    labeler.update_label(labels, "sharing-strategy", "")
    labeler.update_label(labels, "memory", 0)
    return labels


def new_mig_strategy_mixed_labeler(manager, config):
    """Create MIG labels for mig-strategy=mixed, one resource per MIG profile."""
    info = DeviceInfo(manager)
    with _wrapped("unable to retrieve list of MIG devices"):
        migs = info.all_mig_devices()

    resources = _collect_mig_resources(migs, lambda name: f"nvidia.com/mig-{name}")
    return new_mig_device_labelers(resources, config)


def new_mig_device_labelers(resources: dict[str, MigResource], config) -> LabelerList:
    """Create one MIG resource labeler per collected resource."""
    labelers = LabelerList()
    for resource in resources.values():
        with _wrapped("failed to construct labeler"):
            labelers.append(
                new_mig_resource_labeler(resource.name, config, resource.device, resource.count)
            )
    return labelers