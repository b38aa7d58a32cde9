"""
layers.py
~~~~~~~~~

Layer implementations and the type registry used to build nets.

A layer reads its bottom blobs and writes its top blobs. Learnable
parameters live in ``layer.blobs``. Parameter gradients are accumulated
into ``blob.diff``; the solver clears them between iterations.
"""

import logging
from typing import Any, Callable, Dict, List, Sequence, Type

import numpy as np

from caffeshim.framework.blob import Blob

logger = logging.getLogger(__name__)

FLT_MIN = np.finfo(np.float32).tiny

# Global layer registry: {type string: layer class}
LAYERS: Dict[str, Type['Layer']] = {}


def register_layer(layer_type: str) -> Callable[[Type['Layer']], Type['Layer']]:
    """Class decorator that registers a layer under its type string."""
    def decorator(cls: Type['Layer']) -> Type['Layer']:
        cls.type = layer_type
        LAYERS[layer_type] = cls
        return cls
    return decorator


def create_layer(param: Dict[str, Any]) -> 'Layer':
    """
    Instantiate a layer from its definition.

    Raises:
        ValueError: If the type is not registered
    """
    layer_type = param.get('type')
    if layer_type not in LAYERS:
        raise ValueError(
            f"Unknown layer type: {layer_type} (known types: {', '.join(sorted(LAYERS))})"
        )
    return LAYERS[layer_type](param)


def fill(blob: Blob, filler: Dict[str, Any]) -> None:
    """Initialize blob data from a filler definition."""
    filler_type = filler.get('type', 'constant')
    shape = blob.shape

    if filler_type == 'constant':
        blob.data[...] = filler.get('value', 0.0)
    elif filler_type == 'gaussian':
        std = filler.get('std', 1.0)
        blob.data[...] = np.random.randn(*shape) * std + filler.get('mean', 0.0)
    elif filler_type == 'uniform':
        blob.data[...] = np.random.uniform(
            filler.get('min', 0.0), filler.get('max', 1.0), size=shape
        )
    elif filler_type == 'xavier':
        fan_in = blob.count / shape[0] if shape and shape[0] else 1
        scale = np.sqrt(3.0 / fan_in)
        blob.data[...] = np.random.uniform(-scale, scale, size=shape)
    else:
        raise ValueError(f"Unknown filler type: {filler_type}")


def canonical_axis(axis: int, num_axes: int) -> int:
    if not -num_axes <= axis < num_axes:
        raise ValueError(f"axis {axis} out of range for a {num_axes}-axis blob")
    return axis + num_axes if axis < 0 else axis


class Layer:
    """Base class for all layers."""

    type = 'Layer'
    default_loss_weight = 0.0

    def __init__(self, param: Dict[str, Any]):
        self.param = param
        self.name: str = param.get('name', '')
        self.blobs: List[Blob] = []
        self.loss_weights: List[float] = []

    def setup(self, bottom: List[Blob], top: List[Blob]) -> None:
        """One-time initialization (parameter allocation)."""

    def reshape(self, bottom: List[Blob], top: List[Blob]) -> None:
        raise NotImplementedError

    def forward(self, bottom: List[Blob], top: List[Blob]) -> None:
        raise NotImplementedError

    def backward(
        self,
        top: List[Blob],
        propagate_down: Sequence[bool],
        bottom: List[Blob]
    ) -> None:
        """Layers without inputs or gradients keep the default no-op."""

    def propagate_down(self, bottom: List[Blob]) -> List[bool]:
        return [True] * len(bottom)

    def set_loss_weights(self, top: List[Blob]) -> None:
        weights = self.param.get('loss_weight')
        if weights is None:
            weights = [self.default_loss_weight] + [0.0] * (len(top) - 1) if top else []
        elif not isinstance(weights, list):
            weights = [weights]
        if len(weights) != len(top):
            raise ValueError(
                f"Layer {self.name}: loss_weight must be unspecified or given "
                f"once per top blob ({len(top)})"
            )
        self.loss_weights = [float(weight) for weight in weights]

    def run_forward(self, bottom: List[Blob], top: List[Blob]) -> float:
        """Reshape, compute tops, and return the weighted loss."""
        self.reshape(bottom, top)
        self.forward(bottom, top)

        loss = 0.0
        for weight, blob in zip(self.loss_weights, top):
            if weight:
                loss += weight * float(blob.data.sum())
                blob.diff[...] = weight
        return loss


@register_layer('Input')
class InputLayer(Layer):
    """Holds tops that the caller fills in directly."""

    def setup(self, bottom, top):
        shapes = self.param.get('input_param', {}).get('shape', [])
        if not shapes:
            return
        if len(shapes) != 1 and len(shapes) != len(top):
            raise ValueError(
                f"Layer {self.name}: define one shape for all tops or one per top"
            )
        for i, blob in enumerate(top):
            entry = shapes[0] if len(shapes) == 1 else shapes[i]
            blob.reshape(entry['dim'] if isinstance(entry, dict) else entry)

    def reshape(self, bottom, top):
        pass

    def forward(self, bottom, top):
        pass


@register_layer('InnerProduct')
class InnerProductLayer(Layer):
    """Fully connected layer: top = bottom . W^T + b."""

    def setup(self, bottom, top):
        ip_param = self.param.get('inner_product_param', {})
        if 'num_output' not in ip_param:
            raise ValueError(f"Layer {self.name}: num_output is required")

        self.num_output = int(ip_param['num_output'])
        self.bias_term = ip_param.get('bias_term', True)
        self.axis = canonical_axis(ip_param.get('axis', 1), bottom[0].num_axes)
        self.k = int(np.prod(bottom[0].shape[self.axis:], dtype=np.int64))

        weights = Blob((self.num_output, self.k))
        fill(weights, ip_param.get('weight_filler', {'type': 'xavier'}))
        self.blobs = [weights]
        if self.bias_term:
            bias = Blob((self.num_output,))
            fill(bias, ip_param.get('bias_filler', {'type': 'constant'}))
            self.blobs.append(bias)

    def reshape(self, bottom, top):
        shape = bottom[0].shape
        k = int(np.prod(shape[self.axis:], dtype=np.int64))
        if k != self.k:
            raise ValueError(
                f"Layer {self.name}: input size {k} incompatible with "
                f"inner product parameters (expected {self.k})"
            )
        self.m = int(np.prod(shape[:self.axis], dtype=np.int64))
        top[0].reshape(shape[:self.axis] + (self.num_output,))

    def forward(self, bottom, top):
        x = bottom[0].data.reshape(self.m, self.k)
        out = x @ self.blobs[0].data.T
        if self.bias_term:
            out = out + self.blobs[1].data
        top[0].data[...] = out.reshape(top[0].shape)

    def backward(self, top, propagate_down, bottom):
        x = bottom[0].data.reshape(self.m, self.k)
        top_diff = top[0].diff.reshape(self.m, self.num_output)

        self.blobs[0].diff += top_diff.T @ x
        if self.bias_term:
            self.blobs[1].diff += top_diff.sum(axis=0)
        if propagate_down[0]:
            bottom[0].diff[...] = (top_diff @ self.blobs[0].data).reshape(bottom[0].shape)


class NeuronLayer(Layer):
    """Elementwise layer; top has the bottom's shape and may share its blob."""

    def reshape(self, bottom, top):
        if top[0] is not bottom[0]:
            top[0].reshape_like(bottom[0])


@register_layer('ReLU')
class ReLULayer(NeuronLayer):

    def setup(self, bottom, top):
        self.negative_slope = self.param.get('relu_param', {}).get('negative_slope', 0.0)

    def forward(self, bottom, top):
        x = bottom[0].data
        top[0].data[...] = np.where(x > 0, x, x * self.negative_slope)

    def backward(self, top, propagate_down, bottom):
        if propagate_down[0]:
            slope = np.where(bottom[0].data > 0, 1.0, self.negative_slope)
            bottom[0].diff[...] = top[0].diff * slope


@register_layer('Sigmoid')
class SigmoidLayer(NeuronLayer):

    def forward(self, bottom, top):
        top[0].data[...] = 1.0 / (1.0 + np.exp(-bottom[0].data))

    def backward(self, top, propagate_down, bottom):
        if propagate_down[0]:
            s = top[0].data
            bottom[0].diff[...] = top[0].diff * s * (1.0 - s)


@register_layer('TanH')
class TanHLayer(NeuronLayer):

    def forward(self, bottom, top):
        top[0].data[...] = np.tanh(bottom[0].data)

    def backward(self, top, propagate_down, bottom):
        if propagate_down[0]:
            t = top[0].data
            bottom[0].diff[...] = top[0].diff * (1.0 - t * t)


def _softmax(x: np.ndarray, axis: int) -> np.ndarray:
    shifted = np.exp(x - x.max(axis=axis, keepdims=True))
    return shifted / shifted.sum(axis=axis, keepdims=True)


@register_layer('Softmax')
class SoftmaxLayer(Layer):

    def setup(self, bottom, top):
        self.axis = canonical_axis(
            self.param.get('softmax_param', {}).get('axis', 1), bottom[0].num_axes
        )

    def reshape(self, bottom, top):
        top[0].reshape_like(bottom[0])

    def forward(self, bottom, top):
        top[0].data[...] = _softmax(bottom[0].data, self.axis)

    def backward(self, top, propagate_down, bottom):
        if propagate_down[0]:
            y = top[0].data
            dot = (top[0].diff * y).sum(axis=self.axis, keepdims=True)
            bottom[0].diff[...] = (top[0].diff - dot) * y


@register_layer('EuclideanLoss')
class EuclideanLossLayer(Layer):
    """loss = sum((a - b)^2) / (2 * num)."""

    default_loss_weight = 1.0

    def reshape(self, bottom, top):
        if bottom[0].count != bottom[1].count:
            raise ValueError(f"Layer {self.name}: inputs must have the same dimension")
        top[0].reshape(())
        self.num = bottom[0].shape[0] if bottom[0].num_axes else 1
        self.diff = np.zeros(bottom[0].shape, dtype=np.float32)

    def forward(self, bottom, top):
        self.diff = bottom[0].data - bottom[1].data.reshape(bottom[0].shape)
        top[0].data[...] = float(np.sum(self.diff * self.diff)) / self.num / 2.0

    def backward(self, top, propagate_down, bottom):
        scale = float(top[0].diff) / self.num
        for i, sign in enumerate((1.0, -1.0)):
            if propagate_down[i]:
                bottom[i].diff[...] = (sign * scale * self.diff).reshape(bottom[i].shape)


@register_layer('SoftmaxWithLoss')
class SoftmaxWithLossLayer(Layer):
    """Softmax followed by multinomial logistic loss over integer labels."""

    default_loss_weight = 1.0

    def setup(self, bottom, top):
        self.axis = canonical_axis(
            self.param.get('softmax_param', {}).get('axis', 1), bottom[0].num_axes
        )
        loss_param = self.param.get('loss_param', {})
        self.ignore_label = loss_param.get('ignore_label')
        self.normalize = loss_param.get('normalize', True)

    def propagate_down(self, bottom):
        # Labels never receive gradients
        return [True, False]

    def reshape(self, bottom, top):
        shape = bottom[0].shape
        self.outer = int(np.prod(shape[:self.axis], dtype=np.int64))
        self.inner = int(np.prod(shape[self.axis + 1:], dtype=np.int64))
        self.channels = shape[self.axis]
        if bottom[1].count != self.outer * self.inner:
            raise ValueError(
                f"Layer {self.name}: number of labels must match number of "
                f"predictions ({bottom[1].count} vs {self.outer * self.inner})"
            )
        top[0].reshape(())
        if len(top) > 1:
            top[1].reshape_like(bottom[0])

        # Backward before any forward sees zero probabilities and no labels
        self.prob = np.zeros((self.outer, self.channels, self.inner), dtype=np.float32)
        self.outer_idx = self.inner_idx = self.labels = np.zeros(0, dtype=np.int64)
        self.normalizer = 1

    def forward(self, bottom, top):
        prob = _softmax(bottom[0].data, self.axis)
        self.prob = prob.reshape(self.outer, self.channels, self.inner)

        labels = bottom[1].data.reshape(self.outer, self.inner).astype(np.int64)
        valid = np.ones_like(labels, dtype=bool)
        if self.ignore_label is not None:
            valid = labels != self.ignore_label
        self.outer_idx, self.inner_idx = np.nonzero(valid)
        self.labels = labels[self.outer_idx, self.inner_idx]
        if np.any((self.labels < 0) | (self.labels >= self.channels)):
            raise ValueError(f"Layer {self.name}: label out of range [0, {self.channels})")

        picked = self.prob[self.outer_idx, self.labels, self.inner_idx]
        self.normalizer = max(len(self.labels) if self.normalize else self.outer, 1)
        top[0].data[...] = -np.sum(np.log(np.maximum(picked, FLT_MIN))) / self.normalizer
        if len(top) > 1:
            top[1].data[...] = prob

    def backward(self, top, propagate_down, bottom):
        if not propagate_down[0]:
            return
        grad = np.zeros_like(self.prob)
        grad[self.outer_idx, :, self.inner_idx] = self.prob[self.outer_idx, :, self.inner_idx]
        grad[self.outer_idx, self.labels, self.inner_idx] -= 1.0
        grad *= float(top[0].diff) / self.normalizer
        bottom[0].diff[...] = grad.reshape(bottom[0].shape)


@register_layer('Split')
class SplitLayer(Layer):
    """Copies one bottom to several tops and sums their gradients."""

    def reshape(self, bottom, top):
        for blob in top:
            blob.reshape_like(bottom[0])

    def forward(self, bottom, top):
        for blob in top:
            blob.data[...] = bottom[0].data

    def backward(self, top, propagate_down, bottom):
        if propagate_down[0]:
            bottom[0].diff[...] = sum(blob.diff for blob in top)
