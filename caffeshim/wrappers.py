"""
wrappers.py
~~~~~~~~~~~

Host-side object API over the command table.

Objects here hold handles only; every method goes through caffe_(). After
reset_all() the objects still exist but any call on them fails with
StaleHandleError.

Example:
    >>> net = get_net('deploy.json', 'weights.caffemodel', 'test')
    >>> scores = net.forward([image])
"""

from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from caffeshim.commands import caffe_
from caffeshim.handles import Handle


class Blob:
    """A framework blob, addressed in host axis order."""

    def __init__(self, handle: Handle):
        self._handle = handle

    @property
    def handle(self) -> Handle:
        return self._handle

    def shape(self) -> List[int]:
        return [int(dim) for dim in caffe_('blob_get_shape', self._handle)]

    def reshape(self, shape: Sequence[int]) -> None:
        caffe_('blob_reshape', self._handle, np.asarray(shape, dtype=np.float64))

    def get_data(self) -> np.ndarray:
        return caffe_('blob_get_data', self._handle)

    def set_data(self, data: Any) -> None:
        caffe_('blob_set_data', self._handle, np.asarray(data, dtype=np.float32))

    def get_diff(self) -> np.ndarray:
        return caffe_('blob_get_diff', self._handle)

    def set_diff(self, diff: Any) -> None:
        caffe_('blob_set_diff', self._handle, np.asarray(diff, dtype=np.float32))


class Layer:
    """A layer and its parameter blobs."""

    def __init__(self, handle: Handle):
        self._handle = handle
        attributes = caffe_('layer_get_attr', handle)
        self.params = [Blob(h) for h in attributes['hBlob_blobs']]

    @property
    def type(self) -> str:
        return caffe_('layer_get_type', self._handle)


class Net:
    """
    A network with named layers and blobs.

    inputs and outputs list blob names; forward() and backward() take and
    return host arrays in that order.
    """

    def __init__(self, handle: Handle):
        self._handle = handle
        attributes = caffe_('net_get_attr', handle)

        self.layer_vec = [Layer(h) for h in attributes['hLayer_layers']]
        self.blob_vec = [Blob(h) for h in attributes['hBlob_blobs']]
        self.layer_names: List[str] = attributes['layer_names']
        self.blob_names: List[str] = attributes['blob_names']
        self.inputs = [self.blob_names[i] for i in attributes['input_blob_indices']]
        self.outputs = [self.blob_names[i] for i in attributes['output_blob_indices']]

        self.name2layer_index: Dict[str, int] = {
            name: i for i, name in enumerate(self.layer_names)
        }
        self.name2blob_index: Dict[str, int] = {
            name: i for i, name in enumerate(self.blob_names)
        }

    @property
    def handle(self) -> Handle:
        return self._handle

    def layers(self, layer_name: str) -> Layer:
        if layer_name not in self.name2layer_index:
            raise KeyError(f"Unknown layer name '{layer_name}'")
        return self.layer_vec[self.name2layer_index[layer_name]]

    def blobs(self, blob_name: str) -> Blob:
        if blob_name not in self.name2blob_index:
            raise KeyError(f"Unknown blob name '{blob_name}'")
        return self.blob_vec[self.name2blob_index[blob_name]]

    def params(self, layer_name: str, blob_index: int) -> Blob:
        return self.layers(layer_name).params[blob_index]

    def forward_prefilled(self) -> None:
        caffe_('net_forward', self._handle)

    def backward_prefilled(self) -> None:
        caffe_('net_backward', self._handle)

    def forward(self, input_data: Sequence[Any]) -> List[np.ndarray]:
        """Fill the input blobs, run forward, and return the output blobs' data."""
        if len(input_data) != len(self.inputs):
            raise ValueError(
                f"input data must have the same number of elements as the "
                f"number of inputs ({len(self.inputs)})"
            )
        for name, data in zip(self.inputs, input_data):
            self.blobs(name).set_data(data)
        self.forward_prefilled()
        return [self.blobs(name).get_data() for name in self.outputs]

    def backward(self, output_diff: Sequence[Any]) -> List[np.ndarray]:
        """Fill the output diffs, run backward, and return the input diffs."""
        if len(output_diff) != len(self.outputs):
            raise ValueError(
                f"output diff must have the same number of elements as the "
                f"number of outputs ({len(self.outputs)})"
            )
        for name, diff in zip(self.outputs, output_diff):
            self.blobs(name).set_diff(diff)
        self.backward_prefilled()
        return [self.blobs(name).get_diff() for name in self.inputs]

    def copy_from(self, weights_file: str) -> None:
        caffe_('net_copy_from', self._handle, weights_file)

    def reshape(self) -> None:
        caffe_('net_reshape', self._handle)

    def reshape_as_input(self, input_data: Sequence[Any]) -> None:
        """Reshape input blobs to the shapes of input_data, then the whole net."""
        if len(input_data) != len(self.inputs):
            raise ValueError(
                f"input data must have the same number of elements as the "
                f"number of inputs ({len(self.inputs)})"
            )
        for name, data in zip(self.inputs, input_data):
            self.blobs(name).reshape(np.shape(data))
        self.reshape()

    def save(self, weights_file: str) -> None:
        caffe_('net_save', self._handle, weights_file)


class Solver:
    """A solver with its training net and test nets."""

    def __init__(self, handle: Handle):
        self._handle = handle
        attributes = caffe_('solver_get_attr', handle)
        self.net = Net(attributes['hNet_net'])
        self.test_nets = [Net(h) for h in attributes['hNet_test_nets']]

    @property
    def handle(self) -> Handle:
        return self._handle

    def iter(self) -> int:
        return int(caffe_('solver_get_iter', self._handle))

    def restore(self, snapshot_file: str) -> None:
        caffe_('solver_restore', self._handle, snapshot_file)

    def solve(self) -> None:
        caffe_('solver_solve', self._handle)

    def step(self, iters: int) -> None:
        caffe_('solver_step', self._handle, float(iters))

    def snapshot(self, save_file: str = '') -> None:
        caffe_('solver_snapshot', self._handle, save_file)


# ============================================================================
# MODULE FUNCTIONS
# ============================================================================

def get_solver(solver_file: str) -> Solver:
    """Construct a Solver from a solver definition file."""
    return Solver(caffe_('get_solver', solver_file))


def get_net(model_file: str, *args: str) -> Net:
    """
    Construct a Net.

    Usage:
        get_net(model_file, phase)
        get_net(model_file, weights_file, phase)
    """
    weights_file: Optional[str] = None
    if len(args) == 1:
        phase = args[0]
    elif len(args) == 2:
        weights_file, phase = args
    else:
        raise TypeError("usage: get_net(model_file, [weights_file], phase)")

    net = Net(caffe_('get_net', model_file, phase))
    if weights_file is not None:
        net.copy_from(weights_file)
    return net


def reset_all() -> None:
    """Release every solver and net; existing wrapper objects become stale."""
    caffe_('reset')


def set_mode_cpu() -> None:
    caffe_('set_mode_cpu')


def set_mode_gpu() -> None:
    caffe_('set_mode_gpu')


def set_device(device_id: int) -> None:
    caffe_('set_device', float(device_id))


def get_init_key() -> float:
    return caffe_('get_init_key')


def read_mean(mean_proto_file: str) -> np.ndarray:
    return caffe_('read_mean', mean_proto_file)


def write_mean(mean_data: Any, mean_proto_file: str) -> None:
    caffe_('write_mean', np.asarray(mean_data, dtype=np.float32), mean_proto_file)


def init_log(log_base_filename: str) -> None:
    caffe_('init_log', log_base_filename)
