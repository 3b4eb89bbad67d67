"""Labelers describing GPU and MIG resources.

A config is any object with a ``sharing`` attribute. A sharing object offers
``sharing_strategy()`` and ``replicated_resources()``; the latter returns an
object whose ``resources`` hold entries with ``name``, ``replicas`` and
``rename``.

A device offers ``name()``, ``total_memory_mb()``,
``cuda_compute_capability()`` returning ``(major, minor)``, ``attributes()``
returning a mapping, and, for MIG devices, ``parent()``.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from gpufeatures.labels import Empty, LabelError, Labels, merge, sanitise

FULL_GPU_RESOURCE_NAME = "nvidia.com/gpu"
SHARING_STRATEGY_NONE = "none"


@contextmanager
def _wrapped(message: str):
    try:
        yield
    except Exception as err:
        raise LabelError(f"{message}: {err}") from err


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class ResourceLabeler:
    """Builds labels keyed by a fully qualified resource name."""

    resource_name: str
    sharing: Any = None

    def single(self, suffix: str, value: Any) -> Labels:
        """Create the single label <resource-name>.<suffix>."""
        return self.labels({suffix: value})

    def labels(self, suffix_values) -> Labels:
        """Create one label per suffix in the given mapping."""
        result = Labels()
        for suffix, value in suffix_values.items():
            self.update_label(result, suffix, value)
        return result

    def update_label(self, labels: Labels, suffix: str, value: Any) -> None:
        """Set <resource-name>.<suffix> in labels to value."""
        labels[self.key(suffix)] = _format_value(value)

    def key(self, suffix: str) -> str:
        return f"{self.resource_name}.{suffix}"

    def base_labeler(self, count: int, *parts: str) -> Labels:
        """Create the product, count, replicas and sharing-strategy labels."""
        replicas = self.get_replicas()
        strategy = SHARING_STRATEGY_NONE
        if self.sharing is not None and replicas > 1:
            strategy = self.sharing.sharing_strategy()
        return self.labels(
            {
                "product": self.get_product_name(*parts),
                "count": count,
                "replicas": replicas,
                "sharing-strategy": strategy,
            }
        )

    def product_label(self, *parts: str) -> Labels:
        """Create the product label alone, or nothing if there is no name."""
        name = self.get_product_name(*parts)
        if not name:
            return Labels()
        return self.single("product", name)

    def get_product_name(self, *parts: str) -> str:
        stripped = [sanitise(p) for p in parts if p]
        if not stripped:
            return ""
        if self.is_shared() and not self.is_renamed():
            stripped.append("SHARED")
        return "-".join(stripped)

    def get_replicas(self) -> int:
        if self.sharing_disabled():
            return 0
        info = self.replication_info()
        if info is not None and info.replicas > 0:
            return info.replicas
        return 1

    def sharing_disabled(self) -> bool:
        return self.sharing is None

    def is_shared(self) -> bool:
        info = self.replication_info()
        return info is not None and info.replicas > 1

    def is_renamed(self) -> bool:
        info = self.replication_info()
        return info is not None and bool(info.rename)

    def replication_info(self):
        """Return the replication entry for this resource, if configured."""
        if self.sharing_disabled():
            return None
        return next(
            (
                r
                for r in self.sharing.replicated_resources().resources
                if r.name == self.resource_name
            ),
            None,
        )


def make_resource_labeler(resource_name: str, config) -> ResourceLabeler:
    """Create a resource labeler; a missing config disables sharing."""
    sharing = config.sharing if config is not None else None
    return ResourceLabeler(resource_name=resource_name, sharing=sharing)


def new_gpu_resource_labeler_without_sharing(device, count: int):
    """Create a full-GPU resource labeler that applies no sharing labels."""
    return new_gpu_resource_labeler(None, device, count)


def new_gpu_resource_labeler(config, device, count: int):
    """Create a resource labeler for a full GPU with the given count."""
    if count == 0:
        return Empty()

    with _wrapped("failed to get device model"):
        model = device.name()
    with _wrapped("failed to get memory info for device"):
        total_memory_mb = device.total_memory_mb()

    labeler = make_resource_labeler(FULL_GPU_RESOURCE_NAME, config)

    with _wrapped("failed to create architecture labels"):
        architecture = new_architecture_labels(labeler, device)

    memory = labeler.single("memory", total_memory_mb) if total_memory_mb != 0 else Empty()

    return merge(labeler.base_labeler(count, model), memory, architecture)


def new_mig_resource_labeler(resource_name: str, config, device, count: int):
    """Create a resource labeler for a MIG device under the given resource name."""
    if count == 0:
        return Empty()

    with _wrapped("failed to get parent of MIG device"):
        parent = device.parent()
    with _wrapped("failed to get device model"):
        model = parent.name()
    with _wrapped("failed to get MIG profile name"):
        mig_profile = device.name()

    labeler = make_resource_labeler(resource_name, config)

    with _wrapped("failed to get MIG attribute labels"):
        attributes = new_mig_attribute_labels(labeler, device)

    return merge(labeler.base_labeler(count, model, "MIG", mig_profile), attributes)


def new_mig_attribute_labels(labeler: ResourceLabeler, device) -> Labels:
    """Create labels from the attributes of a MIG device."""
    with _wrapped("unable to get attributes of MIG device"):
        attributes = device.attributes()
    return labeler.labels(attributes)


def new_architecture_labels(labeler: ResourceLabeler, device) -> Labels:
    """Create the family and compute-capability labels for a device."""
    with _wrapped("failed to determine CUDA compute capability"):
        major, minor = device.cuda_compute_capability()
    if major == 0:
        return Labels()
    return labeler.labels(
        {
            "family": get_arch_family(major, minor),
            "compute.major": major,
            "compute.minor": minor,
        }
    )


_FAMILIES = {
    1: "tesla",
    2: "fermi",
    3: "kepler",
    5: "maxwell",
    6: "pascal",
    8: "ampere",
    9: "hopper",
}


def get_arch_family(compute_major: int, compute_minor: int) -> str:
    """Return the architecture family name for a compute capability."""
    if compute_major == 7:
        return "volta" if compute_minor < 5 else "turing"
    return _FAMILIES.get(compute_major, "undefined")