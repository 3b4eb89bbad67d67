"""Device plugin allocation logic: building container allocation responses.

A resource manager offers:

- ``resource()``: the fully qualified resource name.
- ``devices()``: a device collection. Iterating it yields devices that offer
  ``is_mig_device()``. It also offers ``subset(ids)``, which returns a
  collection with ``indices()``.
- ``strip_annotations(ids)``: the plain device ids for annotated ids.
- ``get_preferred_allocation(available, must_include, size)``.
- ``validate_request(ids)``.
- ``get_device_paths(ids)``.

A CDI handler offers ``qualified_name(device_class, device_id)``.

When MPS sharing is configured, an MPS daemon offering ``pipe_dir()`` and
``shm_dir()`` and a host root offering ``pipe_dir(resource)`` and
``shm_dir(resource)`` must be supplied.

A config offers ``sharing.sharing_strategy()`` and these flags:
``flags.plugin.device_list_strategy``, ``flags.plugin.cdi_annotation_prefix``,
``flags.plugin.pass_device_specs``, ``flags.plugin.device_id_strategy``,
``flags.gds_enabled``, ``flags.mofed_enabled`` and ``flags.nvidia_dev_root``.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import uuid
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins/"
DEVICE_LIST_ENVVAR = "NVIDIA_VISIBLE_DEVICES"

DEVICE_LIST_AS_VOLUME_MOUNTS_HOST_PATH = "/dev/null"
DEVICE_LIST_AS_VOLUME_MOUNTS_CONTAINER_PATH_ROOT = "/var/run/nvidia-container-devices"

DEVICE_LIST_STRATEGY_ENVVAR = "envvar"
DEVICE_LIST_STRATEGY_VOLUME_MOUNTS = "volume-mounts"
DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS = "cdi-annotations"
DEVICE_LIST_STRATEGY_CDI_CRI = "cdi-cri"
_CDI_STRATEGIES = frozenset({DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS, DEVICE_LIST_STRATEGY_CDI_CRI})

DEVICE_ID_STRATEGY_UUID = "uuid"
DEVICE_ID_STRATEGY_INDEX = "index"

SHARING_STRATEGY_MPS = "mps"

DEFAULT_CDI_ANNOTATION_PREFIX = "cdi.k8s.io/"
CDI_PLUGIN_NAME = "nvidia-device-plugin"
_MAX_ANNOTATION_NAME_LENGTH = 63

_OPTIONAL_DEVICE_PATHS = frozenset(
    {"/dev/nvidiactl", "/dev/nvidia-uvm", "/dev/nvidia-uvm-tools", "/dev/nvidia-modeset"}
)

_QUALIFIED_NAME = re.compile(r"^[^/=]+/[^/=]+=[^=]+$")


@dataclass
class Mount:
    """A host path mounted into a container."""

    container_path: str
    host_path: str


@dataclass
class DeviceSpec:
    """A device node exposed to a container."""

    container_path: str
    host_path: str
    permissions: str = "rw"


@dataclass
class CDIDevice:
    """A fully qualified CDI device name passed through the CRI."""

    name: str


@dataclass
class ContainerAllocateResponse:
    """What a container receives for an allocation request."""

    envs: dict[str, str] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    devices: list[DeviceSpec] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)
    cdi_devices: list[CDIDevice] = field(default_factory=list)


def _join(*parts: str) -> str:
    """Join path elements and clean the result; absolute elements do not reset."""
    kept = [p for p in parts if p]
    if not kept:
        return ""
    return posixpath.normpath("/".join(kept))


def _validate_annotation_name(name: str) -> None:
    if not name[0].isascii() or not name[0].isalnum():
        raise ValueError(f"invalid name {name!r}, should start with letter or digit")
    if not name[-1].isascii() or not name[-1].isalnum():
        raise ValueError(f"invalid name {name!r}, should end with letter or digit")
    for ch in name:
        if not (ch.isascii() and (ch.isalnum() or ch in "-_.")):
            raise ValueError(f"invalid name {name!r}, invalid character {ch!r}")


def update_cdi_annotations(annotations, plugin_name: str, device_id: str, devices) -> dict[str, str]:
    """Add the CDI device injection annotation for the devices to annotations."""
    result = dict(annotations) if annotations else {}
    if not plugin_name:
        raise ValueError("invalid plugin name, empty")
    if not device_id:
        raise ValueError("invalid device ID, empty")
    name = f"{plugin_name}_{device_id}"
    if len(name) > _MAX_ANNOTATION_NAME_LENGTH:
        raise ValueError(f"invalid plugin+deviceID {name!r}, too long")
    _validate_annotation_name(name)

    key = DEFAULT_CDI_ANNOTATION_PREFIX + name
    if key in result:
        raise ValueError(f"CDI device injection annotation {key!r} already exists")

    devices = list(devices)
    for device in devices:
        if not _QUALIFIED_NAME.match(device):
            raise ValueError(f"unqualified device {device!r}, missing vendor, class or name")

    result[key] = ",".join(devices)
    return result


class NvidiaDevicePlugin:
    """Answers device plugin requests for one resource."""

    def __init__(
        self,
        config,
        resource_manager,
        cdi_handler,
        *,
        mps_daemon=None,
        mps_host_root=None,
    ) -> None:
        resource = str(resource_manager.resource())
        name = resource.rsplit("/", 1)[-1]

        self.rm = resource_manager
        self.config = config
        self.cdi_handler = cdi_handler
        self.device_list_envvar = DEVICE_LIST_ENVVAR
        self.device_list_strategies = frozenset(config.flags.plugin.device_list_strategy or ())
        self.cdi_annotation_prefix = config.flags.plugin.cdi_annotation_prefix
        self.socket = _join(DEVICE_PLUGIN_PATH, f"nvidia-{name}") + ".sock"

        self.mps_daemon = None
        self.mps_host_root = None
        if self._uses_mps():
            if any(device.is_mig_device() for device in resource_manager.devices()):
                raise ValueError("sharing using MPS is not supported for MIG devices")
            if mps_daemon is None or mps_host_root is None:
                raise ValueError("sharing using MPS requires an MPS daemon and host root")
            self.mps_daemon = mps_daemon
            self.mps_host_root = mps_host_root

    def _uses_mps(self) -> bool:
        return self.config.sharing.sharing_strategy() == SHARING_STRATEGY_MPS

    def _includes(self, strategy: str) -> bool:
        return strategy in self.device_list_strategies

    def _any_cdi_enabled(self) -> bool:
        return bool(self.device_list_strategies & _CDI_STRATEGIES)

    def _all_cdi_enabled(self) -> bool:
        return bool(self.device_list_strategies) and self.device_list_strategies <= _CDI_STRATEGIES

    def devices(self):
        """Return the full set of devices associated with the plugin."""
        return self.rm.devices()

    def get_device_plugin_options(self) -> dict[str, bool]:
        return {"get_preferred_allocation_available": True}

    def get_preferred_allocation(self, requests) -> list[list[str]]:
        """Return the preferred device ids for each container request.

        Each request offers ``available_device_ids``,
        ``must_include_device_ids`` and ``allocation_size``.
        """
        responses = []
        for req in requests:
            try:
                devices = self.rm.get_preferred_allocation(
                    req.available_device_ids,
                    req.must_include_device_ids,
                    int(req.allocation_size),
                )
            except Exception as err:
                raise RuntimeError(
                    f"error getting list of preferred allocation devices: {err}"
                ) from err
            responses.append(list(devices))
        return responses

    def allocate(self, requests) -> list[ContainerAllocateResponse]:
        """Build a response for each container request, a list of device ids."""
        responses = []
        for device_ids in requests:
            try:
                self.rm.validate_request(device_ids)
            except Exception as err:
                raise ValueError(
                    f"invalid allocation request for {self.rm.resource()!r}: {err}"
                ) from err
            try:
                responses.append(self.get_allocate_response(device_ids))
            except Exception as err:
                raise RuntimeError(f"failed to get allocate response: {err}") from err
        return responses

    def get_allocate_response(self, request_ids) -> ContainerAllocateResponse:
        device_ids = self.device_ids_from_annotated_device_ids(request_ids)
        response = ContainerAllocateResponse()
        flags = self.config.flags

        if self._any_cdi_enabled():
            try:
                self.update_response_for_cdi(response, str(uuid.uuid4()), *device_ids)
            except Exception as err:
                raise RuntimeError(f"failed to get allocate response for CDI: {err}") from err
        if self._uses_mps():
            self.update_response_for_mps(response)

        if self._all_cdi_enabled():
            return response

        if self._includes(DEVICE_LIST_STRATEGY_ENVVAR):
            self.update_response_for_device_list_envvar(response, *device_ids)
        if self._includes(DEVICE_LIST_STRATEGY_VOLUME_MOUNTS):
            self.update_response_for_device_mounts(response, *device_ids)
        if flags.plugin.pass_device_specs:
            response.devices.extend(self.api_device_specs(flags.nvidia_dev_root, request_ids))
        if flags.gds_enabled:
            response.envs["NVIDIA_GDS"] = "enabled"
        if flags.mofed_enabled:
            response.envs["NVIDIA_MOFED"] = "enabled"
        return response

    def update_response_for_mps(self, response: ContainerAllocateResponse) -> None:
        """Add the MPS pipe directory and the pipe and shm mounts."""
        pipe_dir = self.mps_daemon.pipe_dir()
        response.envs["CUDA_MPS_PIPE_DIRECTORY"] = pipe_dir
        resource = self.rm.resource()
        response.mounts.append(
            Mount(container_path=pipe_dir, host_path=self.mps_host_root.pipe_dir(resource))
        )
        response.mounts.append(
            Mount(
                container_path=self.mps_daemon.shm_dir(),
                host_path=self.mps_host_root.shm_dir(resource),
            )
        )

    def update_response_for_cdi(
        self, response: ContainerAllocateResponse, response_id: str, *device_ids: str
    ) -> None:
        """Add the annotations or CDI devices that trigger CDI injection."""
        devices = [self.cdi_handler.qualified_name("gpu", i) for i in device_ids]
        if self.config.flags.gds_enabled:
            devices.append(self.cdi_handler.qualified_name("gds", "all"))
        if self.config.flags.mofed_enabled:
            devices.append(self.cdi_handler.qualified_name("mofed", "all"))

        if not devices:
            return

        if self._includes(DEVICE_LIST_STRATEGY_CDI_ANNOTATIONS):
            response.annotations = self.get_cdi_device_annotations(response_id, *devices)
        if self._includes(DEVICE_LIST_STRATEGY_CDI_CRI):
            response.cdi_devices.extend(CDIDevice(name=d) for d in devices)

    def get_cdi_device_annotations(self, response_id: str, *devices: str) -> dict[str, str]:
        try:
            annotations = update_cdi_annotations({}, CDI_PLUGIN_NAME, response_id, devices)
        except ValueError as err:
            raise ValueError(f"failed to add CDI annotations: {err}") from err

        if self.cdi_annotation_prefix == DEFAULT_CDI_ANNOTATION_PREFIX:
            return annotations
        return {
            self.cdi_annotation_prefix + key.removeprefix(DEFAULT_CDI_ANNOTATION_PREFIX): value
            for key, value in annotations.items()
        }

    def device_ids_from_annotated_device_ids(self, ids) -> list[str]:
        strategy = self.config.flags.plugin.device_id_strategy
        if strategy == DEVICE_ID_STRATEGY_UUID:
            return list(self.rm.strip_annotations(ids))
        if strategy == DEVICE_ID_STRATEGY_INDEX:
            return list(self.rm.devices().subset(ids).indices())
        return []

    def update_response_for_device_list_envvar(
        self, response: ContainerAllocateResponse, *device_ids: str
    ) -> None:
        response.envs[self.device_list_envvar] = ",".join(device_ids)

    def update_response_for_device_mounts(
        self, response: ContainerAllocateResponse, *device_ids: str
    ) -> None:
        """Request devices through volume mounts under a well-known root."""
        self.update_response_for_device_list_envvar(
            response, DEVICE_LIST_AS_VOLUME_MOUNTS_CONTAINER_PATH_ROOT
        )
        response.mounts.extend(
            Mount(
                container_path=_join(DEVICE_LIST_AS_VOLUME_MOUNTS_CONTAINER_PATH_ROOT, i),
                host_path=DEVICE_LIST_AS_VOLUME_MOUNTS_HOST_PATH,
            )
            for i in device_ids
        )

    def api_device_specs(self, dev_root: str, ids) -> list[DeviceSpec]:
        """Return device specs for the ids; absent optional nodes are skipped."""
        specs = []
        for path in self.rm.get_device_paths(ids):
            if path in _OPTIONAL_DEVICE_PATHS and not os.path.exists(path):
                continue
            specs.append(
                DeviceSpec(container_path=path, host_path=_join(dev_root, path), permissions="rw")
            )
        return specs