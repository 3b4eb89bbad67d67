from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from gpufeatures.labels import LabelError
from gpufeatures.resource import (
    ResourceLabeler,
    get_arch_family,
    make_resource_labeler,
    new_architecture_labels,
    new_gpu_resource_labeler,
    new_gpu_resource_labeler_without_sharing,
    new_mig_attribute_labels,
    new_mig_resource_labeler,
)


@dataclass
class Replicated:
    name: str = ""
    replicas: int = 0
    rename: str = ""


@dataclass
class ReplicatedResources:
    resources: list = field(default_factory=list)


@dataclass
class Sharing:
    time_slicing: ReplicatedResources = field(default_factory=ReplicatedResources)
    mps: ReplicatedResources | None = None

    def replicated_resources(self):
        return self.mps if self.mps is not None else self.time_slicing

    def sharing_strategy(self):
        if self.mps is not None and any(r.replicas > 1 for r in self.mps.resources):
            return "mps"
        if any(r.replicas > 1 for r in self.time_slicing.resources):
            return "time-slicing"
        return "none"


@dataclass
class Config:
    sharing: Sharing = field(default_factory=Sharing)


@dataclass
class FakeGPU:
    model: str = "MOCKMODEL"
    memory: int = 300
    compute: tuple = (8, 0)

    def name(self):
        return self.model

    def total_memory_mb(self):
        return self.memory

    def cuda_compute_capability(self):
        return self.compute


@dataclass
class FakeMig:
    gi: int
    ci: int
    memory: int
    parent_device: FakeGPU = field(default_factory=FakeGPU)

    def name(self):
        return f"{self.gi}g.{self.memory}gb"

    def parent(self):
        return self.parent_device

    def attributes(self):
        return {
            "memory": self.memory,
            "multiprocessors": 0,
            "slices.gi": self.gi,
            "slices.ci": self.ci,
            "engines.copy": 0,
            "engines.decoder": 0,
            "engines.encoder": 0,
            "engines.jpeg": 0,
            "engines.ofa": 0,
        }


class BrokenGPU(FakeGPU):
    def total_memory_mb(self):
        raise RuntimeError("no memory info")


def _gpu_labels(count, replicas, strategy, product):
    return {
        "nvidia.com/gpu.count": str(count),
        "nvidia.com/gpu.replicas": str(replicas),
        "nvidia.com/gpu.sharing-strategy": strategy,
        "nvidia.com/gpu.memory": "300",
        "nvidia.com/gpu.product": product,
        "nvidia.com/gpu.family": "ampere",
        "nvidia.com/gpu.compute.major": "8",
        "nvidia.com/gpu.compute.minor": "0",
    }


def _ts(*resources):
    return Sharing(time_slicing=ReplicatedResources(list(resources)))


def _mps(*resources):
    return Sharing(mps=ReplicatedResources(list(resources)))


@pytest.mark.parametrize(
    "count, sharing, expected",
    [
        (0, Sharing(), {}),
        (1, Sharing(), _gpu_labels(1, 1, "none", "MOCKMODEL")),
        (1, _ts(Replicated("nvidia.com/not-gpu", 2)), _gpu_labels(1, 1, "none", "MOCKMODEL")),
        (1, _ts(Replicated("nvidia.com/gpu", 2)), _gpu_labels(1, 2, "time-slicing", "MOCKMODEL-SHARED")),
        (
            1,
            _ts(Replicated("nvidia.com/gpu", 2, "nvidia.com/gpu.shared")),
            _gpu_labels(1, 2, "time-slicing", "MOCKMODEL"),
        ),
        (1, _mps(Replicated("nvidia.com/not-gpu", 2)), _gpu_labels(1, 1, "none", "MOCKMODEL")),
        (1, _mps(Replicated("nvidia.com/gpu", 2)), _gpu_labels(1, 2, "mps", "MOCKMODEL-SHARED")),
        (
            1,
            _mps(Replicated("nvidia.com/gpu", 2, "nvidia.com/gpu.shared")),
            _gpu_labels(1, 2, "mps", "MOCKMODEL"),
        ),
    ],
)
def test_gpu_resource_labeler(count, sharing, expected):
    labeler = new_gpu_resource_labeler(Config(sharing), FakeGPU(), count)
    assert labeler.labels() == expected


def test_gpu_resource_labeler_without_sharing():
    labels = new_gpu_resource_labeler_without_sharing(FakeGPU(), 2).labels()
    assert labels["nvidia.com/gpu.replicas"] == "0"
    assert labels["nvidia.com/gpu.sharing-strategy"] == "none"
    assert labels["nvidia.com/gpu.count"] == "2"
    assert labels["nvidia.com/gpu.product"] == "MOCKMODEL"


def test_gpu_resource_labeler_zero_memory_and_compute():
    labels = new_gpu_resource_labeler(Config(), FakeGPU(memory=0, compute=(0, 0)), 1).labels()
    assert labels == {
        "nvidia.com/gpu.count": "1",
        "nvidia.com/gpu.replicas": "1",
        "nvidia.com/gpu.sharing-strategy": "none",
        "nvidia.com/gpu.product": "MOCKMODEL",
    }


def test_gpu_resource_labeler_wraps_device_errors():
    with pytest.raises(LabelError, match="failed to get memory info for device: no memory info"):
        new_gpu_resource_labeler(Config(), BrokenGPU(), 1)


def _mig_labels(prefix, replicas, strategy, product):
    return {
        f"{prefix}.count": "1",
        f"{prefix}.replicas": str(replicas),
        f"{prefix}.sharing-strategy": strategy,
        f"{prefix}.memory": "300",
        f"{prefix}.product": product,
        f"{prefix}.multiprocessors": "0",
        f"{prefix}.slices.gi": "1",
        f"{prefix}.slices.ci": "2",
        f"{prefix}.engines.copy": "0",
        f"{prefix}.engines.decoder": "0",
        f"{prefix}.engines.encoder": "0",
        f"{prefix}.engines.jpeg": "0",
        f"{prefix}.engines.ofa": "0",
    }


@pytest.mark.parametrize(
    "resource_name, count, sharing, expected",
    [
        ("", 0, Sharing(), {}),
        (
            "nvidia.com/gpu",
            1,
            Sharing(),
            _mig_labels("nvidia.com/gpu", 1, "none", "MOCKMODEL-MIG-1g.300gb"),
        ),
        (
            "nvidia.com/gpu",
            1,
            _ts(Replicated("nvidia.com/gpu", 2)),
            _mig_labels("nvidia.com/gpu", 2, "time-slicing", "MOCKMODEL-MIG-1g.300gb-SHARED"),
        ),
        (
            "nvidia.com/gpu",
            1,
            _ts(Replicated("nvidia.com/gpu", 2, "nvidia.com/gpu.shared")),
            _mig_labels("nvidia.com/gpu", 2, "time-slicing", "MOCKMODEL-MIG-1g.300gb"),
        ),
        (
            "nvidia.com/mig-1g.1gb",
            1,
            _ts(
                Replicated("nvidia.com/gpu", 2, "nvidia.com/gpu.shared"),
                Replicated("nvidia.com/mig-1g.1gb", 2),
            ),
            _mig_labels(
                "nvidia.com/mig-1g.1gb", 2, "time-slicing", "MOCKMODEL-MIG-1g.300gb-SHARED"
            ),
        ),
        (
            "nvidia.com/mig-1g.1gb",
            1,
            _ts(Replicated("nvidia.com/mig-1g.1gb", 2, "nvidia.com/mig-1g.1gb.shared")),
            _mig_labels("nvidia.com/mig-1g.1gb", 2, "time-slicing", "MOCKMODEL-MIG-1g.300gb"),
        ),
    ],
)
def test_mig_resource_labeler(resource_name, count, sharing, expected):
    device = FakeMig(1, 2, 300)
    labeler = new_mig_resource_labeler(resource_name, Config(sharing), device, count)
    assert labeler.labels() == expected


def test_key_and_single():
    labeler = ResourceLabeler("nvidia.com/gpu")
    assert labeler.key("memory") == "nvidia.com/gpu.memory"
    assert labeler.single("flag", True) == {"nvidia.com/gpu.flag": "true"}


def test_update_label_overwrites():
    labeler = ResourceLabeler("nvidia.com/gpu")
    labels = labeler.single("count", 4)
    labeler.update_label(labels, "count", 0)
    assert labels == {"nvidia.com/gpu.count": "0"}


def test_product_label():
    labeler = ResourceLabeler("nvidia.com/gpu")
    assert labeler.product_label("Tesla V100 (PCIe)", "", "MIG") == {
        "nvidia.com/gpu.product": "Tesla-V100-PCIe-MIG"
    }
    assert labeler.product_label("", "") == {}


def test_replicas_and_sharing_flags():
    disabled = make_resource_labeler("nvidia.com/gpu", None)
    assert disabled.sharing_disabled()
    assert disabled.get_replicas() == 0
    assert disabled.replication_info() is None

    shared = make_resource_labeler(
        "nvidia.com/gpu", Config(_ts(Replicated("nvidia.com/gpu", 4, "nvidia.com/gpu.x")))
    )
    assert not shared.sharing_disabled()
    assert shared.get_replicas() == 4
    assert shared.is_shared()
    assert shared.is_renamed()
    assert shared.replication_info().replicas == 4

    zero = make_resource_labeler("nvidia.com/gpu", Config(_ts(Replicated("nvidia.com/gpu", 0))))
    assert zero.get_replicas() == 1
    assert not zero.is_shared()


def test_mig_attribute_labels():
    labeler = ResourceLabeler("nvidia.com/mig-3g.20gb")
    labels = new_mig_attribute_labels(labeler, FakeMig(3, 3, 20))
    assert labels["nvidia.com/mig-3g.20gb.slices.gi"] == "3"
    assert labels["nvidia.com/mig-3g.20gb.memory"] == "20"
    assert len(labels) == 9


def test_architecture_labels():
    labeler = ResourceLabeler("nvidia.com/gpu")
    assert new_architecture_labels(labeler, FakeGPU(compute=(7, 5))) == {
        "nvidia.com/gpu.family": "turing",
        "nvidia.com/gpu.compute.major": "7",
        "nvidia.com/gpu.compute.minor": "5",
    }
    assert new_architecture_labels(labeler, FakeGPU(compute=(0, 0))) == {}


@pytest.mark.parametrize(
    "major, minor, family",
    [
        (1, 0, "tesla"),
        (2, 1, "fermi"),
        (3, 5, "kepler"),
        (4, 0, "undefined"),
        (5, 2, "maxwell"),
        (6, 1, "pascal"),
        (7, 0, "volta"),
        (7, 4, "volta"),
        (7, 5, "turing"),
        (8, 6, "ampere"),
        (9, 0, "hopper"),
        (10, 0, "undefined"),
    ],
)
def test_get_arch_family(major, minor, family):
    assert get_arch_family(major, minor) == family