# gpufeatures

`gpufeatures` works out the node labels that describe the GPUs on a machine
and builds the container allocation responses for a GPU device plugin. It
does not talk to GPUs itself. You pass in a resource manager object that
supplies the device data, and the package turns that data into labels such as:

```
nvidia.com/gpu.product=MOCKMODEL
nvidia.com/gpu.count=1
nvidia.com/gpu.memory=300
nvidia.com/gpu.family=ampere
nvidia.com/mig.strategy=single
```

## Installation

```
pip install gpufeatures
```

The package has no runtime dependencies. To run the tests:

```
pip install "gpufeatures[test]"
pytest
```

## The objects you supply

Managers, devices and configs are plain objects. The package calls the
following attributes and methods on them.

- **Manager**: `init()`, `shutdown()`, `devices()`, `driver_version()`, and
  `cuda_driver_version()`, which returns `(major, minor)`.
- **Device**:
  - `name()`, `total_memory_mb()`, and `cuda_compute_capability()`, which
    returns `(major, minor)`.
  - `is_mig_capable()`, `is_mig_enabled()`, `mig_devices()` and `pci_class()`.
  - On MIG devices, `attributes()`, which returns a mapping, and `parent()`.
- **Config**:
  - `flags.mig_strategy`, which is `"none"`, `"single"` or `"mixed"`.
  - `flags.gfd.machine_type_file`.
  - `sharing`, which offers `sharing_strategy()` and `replicated_resources()`.
    The object that `replicated_resources()` returns has a `.resources` list.
    Each entry has `name`, `replicas` and `rename`.

## Labelers

A labeler is any object with a `labels()` method. That method returns a
`Labels` dict of label names to string values.

### Basic labelers (`gpufeatures.labels`)

- `Labels` holds a fixed set of labels. `Empty` holds none.
- `merge(*labelers)` combines labelers into a `LabelerList`. When two
  labelers set the same key, the later one wins.
- `sanitise(text)` drops characters other than letters, digits, `-`, `_`, `.`
  and spaces. It then joins the remaining words with hyphens.
- `mig_strategy_labeler(strategy)` gives the `nvidia.com/mig.strategy` label.
  It gives nothing for `none`.
- `new_timestamp_labeler(no_timestamp)` gives `nvidia.com/gfd.timestamp`,
  set to the current Unix time, unless `no_timestamp` is true.
- `new_machine_type_labeler(path)` reads the machine type from a file.
  - An empty path gives `unknown`.
  - A file that cannot be read is logged as a warning and also gives
    `unknown`.

### Resource labels (`gpufeatures.resource`)

`ResourceLabeler` builds labels keyed by `<resource-name>.<suffix>`:

```python
from gpufeatures.resource import ResourceLabeler

ResourceLabeler("nvidia.com/gpu").base_labeler(1, "Tesla T4")
# {'nvidia.com/gpu.product': 'Tesla-T4', 'nvidia.com/gpu.count': '1',
#  'nvidia.com/gpu.replicas': '0', 'nvidia.com/gpu.sharing-strategy': 'none'}
```

The resource labelers:

- `new_gpu_resource_labeler(config, device, count)` labels a full GPU:
  product, count, replicas, sharing strategy, memory, architecture family and
  compute capability.
- `new_mig_resource_labeler(resource_name, config, device, count)` labels a
  MIG device. The product name has the form `<parent model>-MIG-<profile>`,
  and the labels include the device's attributes.

Sharing works like this:

- A replicated resource with more than one replica gets `-SHARED` added to
  its product name, unless it is renamed.
- Without a config, sharing is disabled and the replica count is `0`.

`get_arch_family(major, minor)` maps a compute capability to a family name,
such as `ampere` or `hopper`.

### MIG strategies (`gpufeatures.migstrategy`, `gpufeatures.mig`)

`new_resource_labeler(manager, config)` labels full GPUs, then applies the
configured MIG strategy:

- **single** labels all MIG devices under `nvidia.com/gpu`. If the setup does
  not suit this strategy, it gives the `MIG-INVALID` labels instead. That
  happens when:
  - a MIG-enabled GPU has no MIG devices;
  - MIG-enabled and MIG-disabled GPUs are mixed;
  - more than one MIG profile is present.
- **mixed** labels each MIG profile under `nvidia.com/mig-<profile>`.
- **none** adds no MIG labels.

`gpufeatures.mig` has two more tools:

- `DeviceInfo` groups a manager's devices by MIG mode.
- `get_mig_capability_device_paths(minors_path)` reads a MIG minors file and
  maps each capability path to its `/dev/nvidia-caps/nvidia-cap<N>` node.

### Node labels (`gpufeatures.nvml`, `gpufeatures.vgpu`, `gpufeatures.labeler`)

`new_device_labeler(manager, config)` does the following:

1. Initialises the manager.
2. Combines these labels:
   - machine type;
   - driver and CUDA version;
   - `nvidia.com/mig.capable`;
   - `nvidia.com/mps.capable`;
   - the resource labels;
   - `nvidia.com/gpu.mode`, which is `graphics`, `compute` or `unknown`,
     worked out from the PCI class.
3. Shuts the manager down.

If MPS sharing is configured while a device has MIG enabled, it raises
`MPSSharingNotSupportedError`.

`new_vgpu_labeler(lib)` reports these labels:

- `nvidia.com/vgpu.present`;
- the host driver version;
- the host driver branch.

`new_labelers(manager, vgpu, config)` combines the device labels and the vGPU
labels.

When labels cannot be generated, the package raises `LabelError`.

## Writing labels out (`gpufeatures.output`)

`to_file(path)` returns an outputer that writes one `key=value` line per
label:

- With an empty path, the outputer writes to standard output.
- Otherwise it writes the file atomically. The contents go first to a
  temporary file in a `gfd-tmp` directory beside the target. That file is
  then renamed into place and given mode `0644`.

```python
from gpufeatures.labels import Labels, merge
from gpufeatures.output import to_file

labeler = merge(Labels({"nvidia.com/gpu.count": "1"}))
to_file("/tmp/gfd-labels").output(labeler.labels())
```

## Device plugin responses (`gpufeatures.plugin`)

`NvidiaDevicePlugin(config, resource_manager, cdi_handler, mps_daemon=...,
mps_host_root=...)` answers allocation requests for one resource.

- `allocate(requests)` takes a list of device-ID lists. It returns one
  `ContainerAllocateResponse` for each list.
- `get_preferred_allocation(requests)` passes each request on to the resource
  manager.

Depending on the configured device list strategies and flags, a response
carries:

- the `NVIDIA_VISIBLE_DEVICES` variable;
- volume mounts under `/var/run/nvidia-container-devices`;
- CDI annotations, with a prefix you can configure;
- CDI devices;
- the MPS pipe directory and the pipe and shared-memory mounts;
- `DeviceSpec` entries for device nodes;
- the `NVIDIA_GDS` and `NVIDIA_MOFED` variables.

`update_cdi_annotations(annotations, plugin_name, device_id, devices)` adds a
CDI device injection annotation. It checks the name and the device names it
is given.

## What this package does not do

- It does not discover GPUs. Device data comes only from the manager objects
  you supply.
- It does not run a device plugin server. It does not register with the
  kubelet, serve over a socket, or run device health checks. Only the request
  handling is here.
- It does not start or check an MPS control daemon.
- It does not create or update NodeFeature objects in a cluster. Labels go
  only to a file or a stream.
- It has no command-line program.