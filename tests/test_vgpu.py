from types import SimpleNamespace

import pytest

from gpufeatures.labels import LabelError
from gpufeatures.vgpu import new_vgpu_labeler


class FakeLib:
    def __init__(self, devices=None, error=None):
        self._devices = devices or []
        self._error = error

    def devices(self):
        if self._error:
            raise self._error
        return self._devices


class FakeVGPU:
    def __init__(self, version, branch, fail=False):
        self._info = SimpleNamespace(host_driver_version=version, host_driver_branch=branch)
        self._fail = fail

    def info(self):
        if self._fail:
            raise RuntimeError("no info")
        return self._info


def test_no_devices_reports_not_present():
    labels = new_vgpu_labeler(FakeLib()).labels()
    assert labels == {"nvidia.com/vgpu.present": "false"}


def test_device_reports_host_driver():
    lib = FakeLib([FakeVGPU("535.1", "r535")])
    labels = new_vgpu_labeler(lib).labels()
    assert labels == {
        "nvidia.com/vgpu.present": "true",
        "nvidia.com/vgpu.host-driver-version": "535.1",
        "nvidia.com/vgpu.host-driver-branch": "r535",
    }


def test_last_device_wins():
    lib = FakeLib([FakeVGPU("1.0", "a"), FakeVGPU("2.0", "b")])
    labels = new_vgpu_labeler(lib).labels()
    assert labels["nvidia.com/vgpu.host-driver-version"] == "2.0"
    assert labels["nvidia.com/vgpu.host-driver-branch"] == "b"


def test_discovery_failure_yields_no_labels():
    labels = new_vgpu_labeler(FakeLib(error=RuntimeError("boom"))).labels()
    assert labels == {}


def test_info_failure_raises():
    lib = FakeLib([FakeVGPU("1.0", "a", fail=True)])
    with pytest.raises(LabelError):
        new_vgpu_labeler(lib).labels()