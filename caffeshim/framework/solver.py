"""
solver.py
~~~~~~~~~

Gradient-descent solvers built from a JSON solver definition.

Example definition::

    {
        "net": "train_val.json",
        "test_iter": 1,
        "test_interval": 100,
        "base_lr": 0.1,
        "momentum": 0.9,
        "weight_decay": 0.0005,
        "lr_policy": "step",
        "gamma": 0.1,
        "stepsize": 1000,
        "max_iter": 2000,
        "display": 50,
        "snapshot": 500,
        "snapshot_prefix": "snapshots/tiny",
        "type": "SGD"
    }

Relative paths resolve against the directory of the solver file.
"""

import os
import json
import logging
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

import numpy as np

from caffeshim import persistence
from caffeshim.framework.net import Net, TRAIN, TEST

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    'type': 'SGD',
    'base_lr': 0.01,
    'lr_policy': 'fixed',
    'gamma': 0.1,
    'power': 1.0,
    'stepsize': 1,
    'momentum': 0.0,
    'weight_decay': 0.0,
    'max_iter': 0,
    'display': 0,
    'average_loss': 1,
    'snapshot': 0,
    'snapshot_prefix': None,
    'snapshot_after_train': True,
    'test_iter': [],
    'test_interval': 0,
    'test_initialization': True,
}

# Global solver registry: {type string: solver class}
SOLVERS: Dict[str, Type['SGDSolver']] = {}


def register_solver(solver_type: str) -> Callable[[Type['SGDSolver']], Type['SGDSolver']]:
    def decorator(cls: Type['SGDSolver']) -> Type['SGDSolver']:
        cls.type = solver_type
        SOLVERS[solver_type] = cls
        return cls
    return decorator


def read_solver_params_from_file(path: str) -> Dict[str, Any]:
    """
    Load a JSON solver definition.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the file is not a valid definition
    """
    with open(path, 'r') as f:
        param = json.load(f)
    if not isinstance(param, dict):
        raise ValueError(f"{path} is not a solver definition")
    return param


def create_solver(param: Union[str, Dict[str, Any]], source: Optional[str] = None) -> 'SGDSolver':
    """
    Build the solver named by the definition's 'type'.

    Args:
        param: Solver definition, or the path of a JSON definition file
        source: Path the definition was read from (for relative paths)
    """
    if isinstance(param, str):
        source = param
        param = read_solver_params_from_file(param)

    solver_type = param.get('type', DEFAULTS['type'])
    if solver_type not in SOLVERS:
        raise ValueError(
            f"Unknown solver type: {solver_type} (known types: {', '.join(sorted(SOLVERS))})"
        )
    return SOLVERS[solver_type](param, source)


@register_solver('SGD')
class SGDSolver:
    """Stochastic gradient descent with momentum."""

    type = 'SGD'

    def __init__(self, param: Dict[str, Any], source: Optional[str] = None):
        self.param = dict(DEFAULTS, **param)
        self.source = source
        self._base_dir = os.path.dirname(source) if source else ''

        test_iter = self.param['test_iter']
        self.test_iter: List[int] = test_iter if isinstance(test_iter, list) else [test_iter]

        net_file = self.param.get('train_net') or self.param.get('net')
        if not net_file:
            raise ValueError("Solver definition must name a net ('net' or 'train_net')")
        net_file = self._resolve(net_file)
        self.net = Net(net_file, TRAIN)

        test_files = self.param.get('test_net', [])
        if isinstance(test_files, str):
            test_files = [test_files]
        if not test_files and self.test_iter and self.param.get('net'):
            test_files = [net_file]
        if len(test_files) != len(self.test_iter):
            raise ValueError(
                f"test_iter must be specified once per test net "
                f"({len(self.test_iter)} given for {len(test_files)} test nets)"
            )

        self.test_nets: List[Net] = []
        for test_file in test_files:
            test_net = Net(self._resolve(test_file), TEST)
            test_net.share_trained_layers_with(self.net)
            self.test_nets.append(test_net)

        prefix = self.param['snapshot_prefix']
        if prefix:
            self.snapshot_prefix = self._resolve(prefix)
        elif source:
            self.snapshot_prefix = os.path.splitext(source)[0]
        else:
            self.snapshot_prefix = 'snapshot'

        self.iter = 0
        self.history = [np.zeros_like(blob.data) for blob in self.net.learnable_params()]
        self.losses: deque = deque(maxlen=max(int(self.param['average_loss']), 1))
        self.smoothed_loss = 0.0
        self.callbacks: List[Callable[[Dict[str, Any]], None]] = []

        logger.info(
            f"Created {self.type} solver for net '{self.net.name}' "
            f"with {len(self.test_nets)} test net(s)"
        )

    def _resolve(self, path: str) -> str:
        if os.path.isabs(path) or not self._base_dir:
            return path
        return os.path.join(self._base_dir, path)

    def add_callback(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Register a function called after every iteration with its stats."""
        self.callbacks.append(callback)

    # ------------------------------------------------------------------
    # learning rate and updates
    # ------------------------------------------------------------------

    def learning_rate(self) -> float:
        policy = self.param['lr_policy']
        base_lr = self.param['base_lr']
        gamma = self.param['gamma']

        if policy == 'fixed':
            return base_lr
        if policy == 'step':
            return base_lr * gamma ** (self.iter // self.param['stepsize'])
        if policy == 'inv':
            return base_lr * (1.0 + gamma * self.iter) ** (-self.param['power'])
        raise ValueError(f"Unknown learning rate policy: {policy}")

    def compute_update_value(self, history: np.ndarray, grad: np.ndarray, rate: float) -> np.ndarray:
        history[...] = self.param['momentum'] * history + rate * grad
        return history

    def apply_update(self, rate: float) -> None:
        weight_decay = self.param['weight_decay']
        for blob, history in zip(self.net.learnable_params(), self.history):
            grad = blob.diff
            if weight_decay:
                grad = grad + weight_decay * blob.data
            blob.diff[...] = self.compute_update_value(history, grad, rate)
            blob.data -= blob.diff

    def _update_smoothed_loss(self, loss: float) -> None:
        self.losses.append(loss)
        self.smoothed_loss = float(np.mean(self.losses))

    # ------------------------------------------------------------------
    # optimization
    # ------------------------------------------------------------------

    def step(self, iters: int) -> None:
        """
        Run iters iterations of forward, backward and update.

        Raises:
            ValueError: If iters is negative
        """
        if iters < 0:
            raise ValueError(f"iters must be non-negative, got {iters}")

        stop_iter = self.iter + iters
        display = self.param['display']
        test_interval = self.param['test_interval']
        snapshot = self.param['snapshot']

        while self.iter < stop_iter:
            if (test_interval and self.iter % test_interval == 0
                    and (self.iter > 0 or self.param['test_initialization'])):
                self.test_all()

            self.net.clear_param_diffs()
            loss = self.net.forward_prefilled()
            self.net.backward()
            self._update_smoothed_loss(loss)

            rate = self.learning_rate()
            if display and self.iter % display == 0:
                logger.info(f"Iteration {self.iter}, lr = {rate:g}, loss = {self.smoothed_loss:g}")
            for callback in self.callbacks:
                callback({
                    'iter': self.iter,
                    'loss': loss,
                    'smoothed_loss': self.smoothed_loss,
                    'lr': rate
                })

            self.apply_update(rate)
            self.iter += 1

            if snapshot and self.iter % snapshot == 0:
                self.snapshot()

    def solve(self, resume_file: Optional[str] = None) -> None:
        """Optimize until max_iter, optionally resuming from a state file."""
        logger.info(f"Solving {self.net.name}")
        logger.info(f"Learning Rate Policy: {self.param['lr_policy']}")

        if resume_file:
            logger.info(f"Restoring previous solver status from {resume_file}")
            self.restore(resume_file)

        self.step(max(self.param['max_iter'] - self.iter, 0))

        snapshot = self.param['snapshot']
        if self.param['snapshot_after_train'] and (not snapshot or self.iter % snapshot != 0):
            self.snapshot()

        test_interval = self.param['test_interval']
        if test_interval and self.iter % test_interval == 0:
            self.test_all()
        logger.info("Optimization Done.")

    def test_all(self) -> List[Dict[str, Any]]:
        return [self.test(i) for i in range(len(self.test_nets))]

    def test(self, test_net_id: int) -> Dict[str, Any]:
        """
        Average the outputs of a test net over its test_iter passes.

        Returns:
            {output blob name: mean value (float for scalars, else array)}
        """
        logger.info(f"Iteration {self.iter}, Testing net (#{test_net_id})")
        net = self.test_nets[test_net_id]
        names = [net.blob_names[i] for i in net.output_blob_indices]
        sums = [np.zeros_like(blob.data, dtype=np.float64) for blob in net.output_blobs]

        iterations = self.test_iter[test_net_id]
        for _ in range(iterations):
            net.forward_prefilled()
            for total, blob in zip(sums, net.output_blobs):
                total += blob.data

        scores: Dict[str, Any] = {}
        for j, (name, total) in enumerate(zip(names, sums)):
            mean = total / max(iterations, 1)
            scores[name] = float(mean) if mean.size == 1 else mean
            if mean.size == 1:
                logger.info(f"    Test net output #{j}: {name} = {float(mean):g}")
        return scores

    # ------------------------------------------------------------------
    # snapshots
    # ------------------------------------------------------------------

    def snapshot(self, stem: Optional[str] = None) -> Tuple[str, str]:
        """
        Write the weights and the solver state.

        Args:
            stem: Output path without extension. Defaults to
                '<snapshot_prefix>_iter_<iter>'.

        Returns:
            (weights file, solver state file)
        """
        if not stem:
            stem = f"{self.snapshot_prefix}_iter_{self.iter}"
        model_file = stem + '.caffemodel'
        state_file = stem + '.solverstate'

        logger.info(f"Snapshotting to binary proto file {model_file}")
        self.net.save(model_file)
        logger.info(f"Snapshotting solver state to binary proto file {state_file}")
        persistence.save_solver_state(state_file, self.iter, model_file, self.history)
        return model_file, state_file

    def restore(self, state_file: str) -> None:
        """
        Resume from a solver state file and the weights it references.

        Raises:
            ValueError: If the stored history does not match the net
        """
        state = persistence.load_solver_state(state_file)
        history = state['history']
        if len(history) != len(self.history):
            raise ValueError(
                f"Incorrect length of history blobs: {len(history)} in file, "
                f"{len(self.history)} in net"
            )
        for stored, current in zip(history, self.history):
            if stored.shape != current.shape:
                raise ValueError("History blob shape does not match the net")

        learned_net = state['learned_net']
        if learned_net:
            if not os.path.exists(learned_net):
                learned_net = os.path.join(
                    os.path.dirname(state_file), os.path.basename(learned_net)
                )
            self.net.copy_trained_layers_from(learned_net)

        self.iter = state['iter']
        for stored, current in zip(history, self.history):
            current[...] = stored
        logger.info(f"Restored solver to iteration {self.iter}")


@register_solver('Nesterov')
class NesterovSolver(SGDSolver):
    """SGD with Nesterov's accelerated gradient."""

    def compute_update_value(self, history, grad, rate):
        momentum = self.param['momentum']
        previous = history.copy()
        history[...] = momentum * history + rate * grad
        return (1.0 + momentum) * history - momentum * previous
