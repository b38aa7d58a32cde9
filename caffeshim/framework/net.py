"""
net.py
~~~~~~

A directed acyclic graph of layers, built from a JSON net definition.

Example definition::

    {
        "name": "tiny",
        "input": ["data", "label"],
        "input_shape": [{"dim": [4, 3]}, {"dim": [4, 2]}],
        "layer": [
            {"name": "ip", "type": "InnerProduct", "bottom": ["data"],
             "top": ["ip"], "inner_product_param": {"num_output": 2}},
            {"name": "loss", "type": "EuclideanLoss", "bottom": ["ip", "label"],
             "top": ["loss"], "include": {"phase": "train"}}
        ]
    }

Layers run in definition order. A top that repeats one of its layer's
bottoms is computed in place. A blob read by several layers is fed to
them through an implicit Split layer.
"""

import json
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple, Union

from caffeshim import persistence
from caffeshim.framework.blob import Blob
from caffeshim.framework.layers import Layer, create_layer

logger = logging.getLogger(__name__)

TRAIN = 'train'
TEST = 'test'
PHASES = (TRAIN, TEST)


def read_net_params_from_file(path: str) -> Dict[str, Any]:
    """
    Load a JSON net definition.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the file is not a valid definition
    """
    with open(path, 'r') as f:
        param = json.load(f)
    if not isinstance(param, dict) or not isinstance(param.get('layer', []), list):
        raise ValueError(f"{path} is not a net definition")
    return param


def insert_splits(
    input_names: List[str],
    layer_params: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """
    Insert a Split layer after every blob that more than one layer reads.

    Each reader gets its own split top, so gradients from all readers are
    summed into the shared blob on the way back. A layer computing in place
    on a split top keeps the split name for its top.

    Returns:
        The layer definitions to build, with bottoms and tops renamed
    """
    # A blob version is (producing layer index, name); -1 marks net inputs
    producer = {name: (-1, name) for name in input_names}
    readers: Dict[Tuple[int, str], int] = {}
    bottom_versions = []
    for i, layer_param in enumerate(layer_params):
        versions = []
        for name in layer_param.get('bottom', []):
            version = producer.get(name)
            versions.append(version)
            if version is not None:
                readers[version] = readers.get(version, 0) + 1
        bottom_versions.append(versions)
        for name in layer_param.get('top', []):
            producer[name] = (i, name)

    if all(count < 2 for count in readers.values()):
        return list(layer_params)

    current_name: Dict[Tuple[int, str], str] = {}
    split_prefix: Dict[Tuple[int, str], str] = {}
    next_split: Dict[Tuple[int, str], int] = {}
    result: List[Dict[str, Any]] = []

    def add_split(version, producer_name):
        count = readers.get(version, 0)
        if count < 2:
            return
        name = current_name.get(version, version[1])
        split_prefix[version] = f"{name}_{producer_name}_split"
        result.append({
            'name': split_prefix[version],
            'type': 'Split',
            'bottom': [name],
            'top': [f"{split_prefix[version]}_{k}" for k in range(count)]
        })

    for name in input_names:
        add_split((-1, name), 'input')

    for i, layer_param in enumerate(layer_params):
        original_bottoms = list(layer_param.get('bottom', []))
        bottoms = list(original_bottoms)
        for j, version in enumerate(bottom_versions[i]):
            if version is None:
                continue
            if readers[version] > 1:
                k = next_split.get(version, 0)
                next_split[version] = k + 1
                bottoms[j] = f"{split_prefix[version]}_{k}"
            else:
                bottoms[j] = current_name.get(version, bottoms[j])

        renamed = {old: new for old, new in zip(original_bottoms, bottoms) if old != new}
        tops = []
        for name in layer_param.get('top', []):
            if name in renamed:
                current_name[(i, name)] = renamed[name]
            tops.append(renamed.get(name, name))

        result.append(dict(layer_param, bottom=bottoms, top=tops))
        for name in layer_param.get('top', []):
            add_split((i, name), layer_param.get('name', ''))

    return result


class Net:
    """Layers, the blobs connecting them, and forward/backward passes."""

    def __init__(self, param: Union[str, Dict[str, Any]], phase: str = TRAIN):
        if phase not in PHASES:
            raise ValueError(f"Unknown phase '{phase}'")

        self.source: Optional[str] = None
        if isinstance(param, str):
            self.source = param
            param = read_net_params_from_file(param)

        self.name: str = param.get('name', '')
        self.phase = phase

        self.layers: List[Layer] = []
        self.layer_names: List[str] = []
        self.blobs: List[Blob] = []
        self.blob_names: List[str] = []
        self.bottom_vecs: List[List[Blob]] = []
        self.top_vecs: List[List[Blob]] = []
        self.propagate_down: List[List[bool]] = []
        self.input_blob_indices: List[int] = []
        self.output_blob_indices: List[int] = []

        self._blob_index: Dict[str, int] = {}
        self._layer_index: Dict[str, int] = {}

        self._init(param)
        logger.info(
            f"Net '{self.name}' ({phase}) initialized: {len(self.layers)} layers, "
            f"{len(self.blobs)} blobs"
        )

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    def _append_blob(self, name: str, blob: Blob) -> int:
        index = len(self.blobs)
        self.blobs.append(blob)
        self.blob_names.append(name)
        self._blob_index[name] = index
        return index

    def _included(self, layer_param: Dict[str, Any]) -> bool:
        include = layer_param.get('include')
        if not include:
            return True
        rules = include if isinstance(include, list) else [include]
        return any(rule.get('phase', self.phase) == self.phase for rule in rules)

    def _init(self, param: Dict[str, Any]) -> None:
        inputs = param.get('input', [])
        input_shapes = param.get('input_shape', [])
        if input_shapes and len(input_shapes) != len(inputs):
            raise ValueError("input_shape must be given once per input")

        # Blobs produced but not yet consumed: {name: blob index}
        available: Dict[str, int] = OrderedDict()

        for i, name in enumerate(inputs):
            dims = input_shapes[i]['dim'] if input_shapes else []
            index = self._append_blob(name, Blob(dims))
            self.input_blob_indices.append(index)
            available[name] = index

        layer_params = []
        for layer_param in param.get('layer', []):
            if self._included(layer_param):
                layer_params.append(layer_param)
            else:
                logger.debug(f"Skipping layer '{layer_param.get('name')}' in {self.phase} phase")

        for layer_param in insert_splits(inputs, layer_params):
            layer = create_layer(layer_param)
            if layer.name in self._layer_index:
                raise ValueError(f"Duplicate layer name '{layer.name}'")

            bottom_names = list(layer_param.get('bottom', []))
            bottoms = []
            for name in bottom_names:
                if name not in available:
                    raise ValueError(f"Unknown bottom blob '{name}' (layer '{layer.name}')")
                bottoms.append(self.blobs[available.pop(name)])

            tops = []
            for name in layer_param.get('top', []):
                if name in bottom_names:
                    index = self._blob_index[name]
                elif name in self._blob_index:
                    raise ValueError(f"Top blob '{name}' produced by multiple sources")
                else:
                    index = self._append_blob(name, Blob())
                tops.append(self.blobs[index])
                available[name] = index

            layer.setup(bottoms, tops)
            layer.reshape(bottoms, tops)
            layer.set_loss_weights(tops)

            self._layer_index[layer.name] = len(self.layers)
            self.layers.append(layer)
            self.layer_names.append(layer.name)
            self.bottom_vecs.append(bottoms)
            self.top_vecs.append(tops)
            self.propagate_down.append(layer.propagate_down(bottoms))

        self.output_blob_indices = list(available.values())

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------

    def blob_by_name(self, name: str) -> Blob:
        if name not in self._blob_index:
            raise KeyError(f"Unknown blob name '{name}'")
        return self.blobs[self._blob_index[name]]

    def has_layer(self, name: str) -> bool:
        return name in self._layer_index

    def layer_by_name(self, name: str) -> Layer:
        if name not in self._layer_index:
            raise KeyError(f"Unknown layer name '{name}'")
        return self.layers[self._layer_index[name]]

    @property
    def output_blobs(self) -> List[Blob]:
        return [self.blobs[i] for i in self.output_blob_indices]

    def learnable_params(self) -> List[Blob]:
        """Parameter blobs in layer order, each listed once."""
        seen = set()
        params = []
        for layer in self.layers:
            for blob in layer.blobs:
                if id(blob) not in seen:
                    seen.add(id(blob))
                    params.append(blob)
        return params

    def clear_param_diffs(self) -> None:
        for blob in self.learnable_params():
            blob.diff[...] = 0.0

    # ------------------------------------------------------------------
    # passes
    # ------------------------------------------------------------------

    def forward_from_to(self, start: int, end: int) -> float:
        """
        Run layers start..end inclusive.

        Returns:
            The summed weighted loss of the layers that ran

        Raises:
            IndexError: If start is negative or end is past the last layer
        """
        if start < 0:
            raise IndexError(f"start layer {start} must be non-negative")
        if end >= len(self.layers):
            raise IndexError(f"end layer {end} out of range ({len(self.layers)} layers)")

        loss = 0.0
        for i in range(start, end + 1):
            loss += self.layers[i].run_forward(self.bottom_vecs[i], self.top_vecs[i])
        return loss

    def forward_from(self, start: int) -> float:
        return self.forward_from_to(start, len(self.layers) - 1)

    def forward_prefilled(self) -> float:
        return self.forward_from_to(0, len(self.layers) - 1)

    def backward_from_to(self, start: int, end: int) -> None:
        """
        Propagate gradients from layer start down to layer end inclusive.

        Raises:
            IndexError: If end is negative or start is past the last layer
        """
        if end < 0:
            raise IndexError(f"end layer {end} must be non-negative")
        if start >= len(self.layers):
            raise IndexError(f"start layer {start} out of range ({len(self.layers)} layers)")

        for i in range(start, end - 1, -1):
            self.layers[i].backward(self.top_vecs[i], self.propagate_down[i], self.bottom_vecs[i])

    def backward_from(self, start: int) -> None:
        self.backward_from_to(start, 0)

    def backward(self) -> None:
        self.backward_from_to(len(self.layers) - 1, 0)

    def reshape(self) -> None:
        """Propagate input shapes through every layer."""
        for i, layer in enumerate(self.layers):
            layer.reshape(self.bottom_vecs[i], self.top_vecs[i])

    # ------------------------------------------------------------------
    # parameters
    # ------------------------------------------------------------------

    def copy_trained_layers_from(self, path: str) -> None:
        """
        Copy parameters from a weights file, matching layers by name.

        Layers absent from the file keep their values; layers absent from
        the net are ignored.

        Raises:
            ValueError: If a matching layer has a different number or
                shape of parameter blobs
        """
        params = persistence.load_weights(path)
        copied = 0
        for name, arrays in params.items():
            if name not in self._layer_index:
                logger.info(f"Ignoring source layer {name}")
                continue
            layer = self.layer_by_name(name)
            if len(arrays) != len(layer.blobs):
                raise ValueError(
                    f"Incompatible number of blobs for layer {name}: "
                    f"{len(arrays)} in file, {len(layer.blobs)} in net"
                )
            for blob, array in zip(layer.blobs, arrays):
                if blob.shape != array.shape:
                    raise ValueError(
                        f"Cannot copy param of layer {name}; shape mismatch. "
                        f"Source param shape is {list(array.shape)}; "
                        f"target param shape is {list(blob.shape)}"
                    )
                blob.data[...] = array
            copied += 1
        logger.info(f"Copied parameters of {copied} layer(s) from {path}")

    def share_trained_layers_with(self, other: 'Net') -> None:
        """Use other's parameter blobs for every layer with the same name."""
        for layer in self.layers:
            if not layer.blobs or not other.has_layer(layer.name):
                continue
            source = other.layer_by_name(layer.name)
            if len(source.blobs) != len(layer.blobs):
                raise ValueError(f"Incompatible number of blobs for layer {layer.name}")
            for target, blob in zip(layer.blobs, source.blobs):
                if target.shape != blob.shape:
                    raise ValueError(f"Cannot share param of layer {layer.name}; shape mismatch")
            layer.blobs = list(source.blobs)

    def to_params(self) -> Dict[str, List]:
        return OrderedDict(
            (layer.name, [blob.data for blob in layer.blobs])
            for layer in self.layers if layer.blobs
        )

    def save(self, path: str) -> None:
        persistence.save_weights(path, self.to_params())
