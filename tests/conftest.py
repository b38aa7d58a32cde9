"""
conftest.py
~~~~~~~~~~~

Shared fixtures: JSON net and solver definitions written under tmp_path,
and a fresh registry and compute mode for every test.
"""

import json

import numpy as np
import pytest

from caffeshim import commands, handles
from caffeshim.framework import mode


REGRESSION_NET = {
    'name': 'tiny',
    'input': ['data', 'label'],
    'input_shape': [{'dim': [4, 3]}, {'dim': [4, 2]}],
    'layer': [
        {
            'name': 'ip1', 'type': 'InnerProduct',
            'bottom': ['data'], 'top': ['ip1'],
            'inner_product_param': {
                'num_output': 5,
                'weight_filler': {'type': 'gaussian', 'std': 0.5},
                'bias_filler': {'type': 'constant', 'value': 0.1}
            }
        },
        {'name': 'relu1', 'type': 'ReLU', 'bottom': ['ip1'], 'top': ['ip1']},
        {
            'name': 'ip2', 'type': 'InnerProduct',
            'bottom': ['ip1'], 'top': ['ip2'],
            'inner_product_param': {
                'num_output': 2,
                'weight_filler': {'type': 'gaussian', 'std': 0.5}
            }
        },
        {
            'name': 'loss', 'type': 'EuclideanLoss',
            'bottom': ['ip2', 'label'], 'top': ['loss'],
            'include': {'phase': 'train'}
        }
    ]
}

CLASSIFIER_NET = {
    'name': 'classifier',
    'layer': [
        {
            'name': 'data', 'type': 'Input', 'top': ['data', 'label'],
            'input_param': {'shape': [{'dim': [8, 4]}, {'dim': [8]}]}
        },
        {
            'name': 'ip', 'type': 'InnerProduct',
            'bottom': ['data'], 'top': ['ip'],
            'inner_product_param': {
                'num_output': 3,
                'weight_filler': {'type': 'xavier'}
            }
        },
        {'name': 'loss', 'type': 'SoftmaxWithLoss', 'bottom': ['ip', 'label'], 'top': ['loss']}
    ]
}


def _write_json(path, content):
    path.write_text(json.dumps(content, indent=2))
    return str(path)


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch):
    """Give every test its own registry and the default compute mode."""
    monkeypatch.setattr(handles, '_registry', None)
    monkeypatch.setattr(commands, '_first_call_done', True)
    monkeypatch.setattr(mode, '_mode', mode.CPU)
    monkeypatch.setattr(mode, '_device_id', 0)
    np.random.seed(1234)


@pytest.fixture
def net_file(tmp_path):
    """Regression net: data(4x3) -> ip1(5) -> relu -> ip2(2) -> Euclidean loss."""
    return _write_json(tmp_path / 'tiny_net.json', REGRESSION_NET)


@pytest.fixture
def classifier_net_file(tmp_path):
    """Classifier net: Input layer -> ip(3) -> softmax loss."""
    return _write_json(tmp_path / 'classifier_net.json', CLASSIFIER_NET)


@pytest.fixture
def solver_params():
    return {
        'net': 'tiny_net.json',
        'base_lr': 0.05,
        'momentum': 0.9,
        'lr_policy': 'fixed',
        'max_iter': 30,
        'test_iter': 1,
        'snapshot_prefix': 'snapshots/tiny'
    }


@pytest.fixture
def solver_file(tmp_path, net_file, solver_params):
    return _write_json(tmp_path / 'solver.json', solver_params)


@pytest.fixture
def regression_batch():
    """Inputs and targets for the regression net, blob axis order."""
    rng = np.random.RandomState(7)
    data = rng.randn(4, 3).astype(np.float32)
    label = (data @ rng.randn(3, 2) * 0.5).astype(np.float32)
    return data, label
