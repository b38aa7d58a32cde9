"""
commands.py
~~~~~~~~~~~

The command table and the single entry point.

    caffe_(api_command, arg1, arg2, ...)

Each command validates its argument count and types, unwraps handles,
calls one framework method and wraps the result. Failures raise a
CaffeShimError subclass and abort the call; nothing is retried.
"""

import os
import logging
from collections.abc import Mapping
from typing import Any, Callable, List, NamedTuple, Tuple

import numpy as np

from caffeshim import log
from caffeshim import persistence
from caffeshim.config import Settings
from caffeshim.convert import (
    DATA,
    DIFF,
    blob_to_host,
    host_to_blob,
    host_to_shape,
    int_vec_to_host,
    shape_to_host,
    str_vec_to_host,
)
from caffeshim.errors import (
    CaffeShimError,
    FrameworkError,
    MissingFileError,
    UnknownCommandError,
    UsageError,
)
from caffeshim.framework import mode
from caffeshim.framework.blob import Blob
from caffeshim.framework.layers import Layer
from caffeshim.framework.net import Net, PHASES
from caffeshim.framework.solver import SGDSolver, create_solver
from caffeshim.handles import Handle, get_registry

logger = logging.getLogger(__name__)

Outputs = Tuple[Any, ...]


class Command(NamedTuple):
    name: str
    handler: Callable[[Tuple[Any, ...]], Outputs]
    usage: str


# Linear dispatch table, in registration order
HANDLERS: List[Command] = []

# Set once the first command has run
_first_call_done = False


def command(name: str, usage: str) -> Callable:
    """Register a handler under a command name."""
    def decorator(func: Callable[[Tuple[Any, ...]], Outputs]) -> Callable:
        HANDLERS.append(Command(name, func, usage))
        return func
    return decorator


# ============================================================================
# ARGUMENT CHECKS
# ============================================================================

def check(expr: bool, msg: str) -> None:
    """Raise UsageError(msg) unless expr holds."""
    if not expr:
        raise UsageError(msg)


def check_file_exist(path: str) -> None:
    if not os.path.isfile(path) or not os.access(path, os.R_OK):
        raise MissingFileError(path)


def is_char(value: Any) -> bool:
    return isinstance(value, str)


def is_struct(value: Any) -> bool:
    return isinstance(value, Handle) or (
        isinstance(value, Mapping) and 'ptr' in value and 'init_key' in value
    )


def is_numeric(value: Any) -> bool:
    if isinstance(value, (bool, np.bool_)):
        return False
    if isinstance(value, (int, float, np.integer, np.floating)):
        return True
    return isinstance(value, np.ndarray) and value.dtype.kind in 'iuf'


def is_single(value: Any) -> bool:
    return isinstance(value, np.ndarray) and value.dtype == np.float32


def scalar(value: Any) -> float:
    """First element of a numeric argument."""
    flat = np.asarray(value, dtype=np.float64).reshape(-1)
    check(flat.size > 0, "expected a numeric scalar, got an empty array")
    return float(flat[0])


def _solver(value: Any) -> SGDSolver:
    return get_registry().resolve(value, SGDSolver)


def _net(value: Any) -> Net:
    return get_registry().resolve(value, Net)


def _layer(value: Any) -> Layer:
    return get_registry().resolve(value, Layer)


def _blob(value: Any) -> Blob:
    return get_registry().resolve(value, Blob)


# ============================================================================
# SOLVER COMMANDS
# ============================================================================

@command('get_solver', "Usage: caffe_('get_solver', solver_file)")
def get_solver(args):
    check(len(args) == 1 and is_char(args[0]), "Usage: caffe_('get_solver', solver_file)")
    solver_file = args[0]
    check_file_exist(solver_file)
    solver = create_solver(solver_file)
    return (get_registry().add_solver(solver),)


@command('solver_get_attr', "Usage: caffe_('solver_get_attr', hSolver)")
def solver_get_attr(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('solver_get_attr', hSolver)")
    solver = _solver(args[0])
    registry = get_registry()
    return ({
        'hNet_net': registry.issue(solver.net),
        'hNet_test_nets': registry.issue_all(solver.test_nets),
    },)


@command('solver_get_iter', "Usage: caffe_('solver_get_iter', hSolver)")
def solver_get_iter(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('solver_get_iter', hSolver)")
    return (float(_solver(args[0]).iter),)


@command('solver_restore', "Usage: caffe_('solver_restore', hSolver, snapshot_file)")
def solver_restore(args):
    check(len(args) == 2 and is_struct(args[0]) and is_char(args[1]),
          "Usage: caffe_('solver_restore', hSolver, snapshot_file)")
    solver = _solver(args[0])
    check_file_exist(args[1])
    solver.restore(args[1])
    return ()


@command('solver_solve', "Usage: caffe_('solver_solve', hSolver)")
def solver_solve(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('solver_solve', hSolver)")
    _solver(args[0]).solve()
    return ()


@command('solver_step', "Usage: caffe_('solver_step', hSolver, iters)")
def solver_step(args):
    check(len(args) == 2 and is_struct(args[0]) and is_numeric(args[1]),
          "Usage: caffe_('solver_step', hSolver, iters)")
    solver = _solver(args[0])
    solver.step(int(scalar(args[1])))
    return ()


@command('solver_snapshot', "Usage: caffe_('solver_snapshot', hSolver, save_file)")
def solver_snapshot(args):
    check(len(args) == 2 and is_struct(args[0]) and is_char(args[1]),
          "Usage: caffe_('solver_snapshot', hSolver, save_file)")
    solver = _solver(args[0])
    # An empty name keeps the solver's own snapshot prefix
    solver.snapshot(args[1] or None)
    return ()


# ============================================================================
# NET COMMANDS
# ============================================================================

@command('get_net', "Usage: caffe_('get_net', model_file, phase_name)")
def get_net(args):
    check(len(args) == 2 and is_char(args[0]) and is_char(args[1]),
          "Usage: caffe_('get_net', model_file, phase_name)")
    model_file, phase_name = args
    check_file_exist(model_file)
    if phase_name not in PHASES:
        raise UsageError("Unknown phase")
    net = Net(model_file, phase_name)
    return (get_registry().add_net(net),)


@command('net_get_attr', "Usage: caffe_('net_get_attr', hNet)")
def net_get_attr(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('net_get_attr', hNet)")
    net = _net(args[0])
    registry = get_registry()
    return ({
        'hLayer_layers': registry.issue_all(net.layers),
        'hBlob_blobs': registry.issue_all(net.blobs),
        'input_blob_indices': int_vec_to_host(net.input_blob_indices),
        'output_blob_indices': int_vec_to_host(net.output_blob_indices),
        'layer_names': str_vec_to_host(net.layer_names),
        'blob_names': str_vec_to_host(net.blob_names),
    },)


NET_FORWARD_USAGE = "Usage: caffe_('net_forward', hNet, from_layer=0, to_layer=end)"


@command('net_forward', NET_FORWARD_USAGE)
def net_forward(args):
    check(1 <= len(args) <= 3 and is_struct(args[0]), NET_FORWARD_USAGE)
    net = _net(args[0])
    check(all(is_numeric(arg) for arg in args[1:]), NET_FORWARD_USAGE)
    if len(args) == 1:
        net.forward_prefilled()
    elif len(args) == 2:
        net.forward_from(int(scalar(args[1])))
    else:
        net.forward_from_to(int(scalar(args[1])), int(scalar(args[2])))
    return ()


NET_BACKWARD_USAGE = "Usage: caffe_('net_backward', hNet, from_layer=end, to_layer=0)"


@command('net_backward', NET_BACKWARD_USAGE)
def net_backward(args):
    check(1 <= len(args) <= 3 and is_struct(args[0]), NET_BACKWARD_USAGE)
    net = _net(args[0])
    check(all(is_numeric(arg) for arg in args[1:]), NET_BACKWARD_USAGE)
    if len(args) == 1:
        net.backward()
    elif len(args) == 2:
        net.backward_from(int(scalar(args[1])))
    else:
        net.backward_from_to(int(scalar(args[1])), int(scalar(args[2])))
    return ()


@command('net_copy_from', "Usage: caffe_('net_copy_from', hNet, weights_file)")
def net_copy_from(args):
    check(len(args) == 2 and is_struct(args[0]) and is_char(args[1]),
          "Usage: caffe_('net_copy_from', hNet, weights_file)")
    net = _net(args[0])
    check_file_exist(args[1])
    net.copy_trained_layers_from(args[1])
    return ()


@command('net_reshape', "Usage: caffe_('net_reshape', hNet)")
def net_reshape(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('net_reshape', hNet)")
    _net(args[0]).reshape()
    return ()


@command('net_save', "Usage: caffe_('net_save', hNet, save_file)")
def net_save(args):
    check(len(args) == 2 and is_struct(args[0]) and is_char(args[1]),
          "Usage: caffe_('net_save', hNet, save_file)")
    _net(args[0]).save(args[1])
    return ()


# ============================================================================
# LAYER COMMANDS
# ============================================================================

@command('layer_get_attr', "Usage: caffe_('layer_get_attr', hLayer)")
def layer_get_attr(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('layer_get_attr', hLayer)")
    layer = _layer(args[0])
    return ({'hBlob_blobs': get_registry().issue_all(layer.blobs)},)


@command('layer_get_type', "Usage: caffe_('layer_get_type', hLayer)")
def layer_get_type(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('layer_get_type', hLayer)")
    return (_layer(args[0]).type,)


# ============================================================================
# BLOB COMMANDS
# ============================================================================

@command('blob_get_shape', "Usage: caffe_('blob_get_shape', hBlob)")
def blob_get_shape(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('blob_get_shape', hBlob)")
    return (shape_to_host(_blob(args[0]).shape),)


@command('blob_reshape', "Usage: caffe_('blob_reshape', hBlob, new_shape)")
def blob_reshape(args):
    check(len(args) == 2 and is_struct(args[0]) and is_numeric(args[1]),
          "Usage: caffe_('blob_reshape', hBlob, new_shape)")
    blob = _blob(args[0])
    blob.reshape(host_to_shape(args[1]))
    return ()


@command('blob_get_data', "Usage: caffe_('blob_get_data', hBlob)")
def blob_get_data(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('blob_get_data', hBlob)")
    return (blob_to_host(_blob(args[0]), DATA),)


@command('blob_set_data', "Usage: caffe_('blob_set_data', hBlob, new_data)")
def blob_set_data(args):
    check(len(args) == 2 and is_struct(args[0]) and is_single(args[1]),
          "Usage: caffe_('blob_set_data', hBlob, new_data)")
    host_to_blob(args[1], _blob(args[0]), DATA)
    return ()


@command('blob_get_diff', "Usage: caffe_('blob_get_diff', hBlob)")
def blob_get_diff(args):
    check(len(args) == 1 and is_struct(args[0]), "Usage: caffe_('blob_get_diff', hBlob)")
    return (blob_to_host(_blob(args[0]), DIFF),)


@command('blob_set_diff', "Usage: caffe_('blob_set_diff', hBlob, new_diff)")
def blob_set_diff(args):
    check(len(args) == 2 and is_struct(args[0]) and is_single(args[1]),
          "Usage: caffe_('blob_set_diff', hBlob, new_diff)")
    host_to_blob(args[1], _blob(args[0]), DIFF)
    return ()


# ============================================================================
# PROCESS-WIDE COMMANDS
# ============================================================================

@command('set_mode_cpu', "Usage: caffe_('set_mode_cpu')")
def set_mode_cpu(args):
    check(len(args) == 0, "Usage: caffe_('set_mode_cpu')")
    mode.set_mode(mode.CPU)
    return ()


@command('set_mode_gpu', "Usage: caffe_('set_mode_gpu')")
def set_mode_gpu(args):
    check(len(args) == 0, "Usage: caffe_('set_mode_gpu')")
    mode.set_mode(mode.GPU)
    return ()


@command('set_device', "Usage: caffe_('set_device', device_id)")
def set_device(args):
    check(len(args) == 1 and is_numeric(args[0]), "Usage: caffe_('set_device', device_id)")
    mode.set_device(int(scalar(args[0])))
    return ()


@command('get_init_key', "Usage: caffe_('get_init_key')")
def get_init_key(args):
    check(len(args) == 0, "Usage: caffe_('get_init_key')")
    return (get_registry().init_key,)


@command('reset', "Usage: caffe_('reset')")
def reset(args):
    check(len(args) == 0, "Usage: caffe_('reset')")
    get_registry().reset()
    return ()


@command('read_mean', "Usage: caffe_('read_mean', mean_proto_file)")
def read_mean(args):
    check(len(args) == 1 and is_char(args[0]), "Usage: caffe_('read_mean', mean_proto_file)")
    check_file_exist(args[0])
    data = persistence.load_mean(args[0])
    data_mean = Blob(data.shape)
    data_mean.data[...] = data
    return (blob_to_host(data_mean, DATA),)


@command('write_mean', "Usage: caffe_('write_mean', mean_data, mean_proto_file)")
def write_mean(args):
    check(len(args) == 2 and is_single(args[0]) and is_char(args[1]),
          "Usage: caffe_('write_mean', mean_data, mean_proto_file)")
    mean_data, mean_proto_file = args
    check(2 <= mean_data.ndim <= 3, "mean_data must have 2 or 3 dimensions")
    width, height = mean_data.shape[0], mean_data.shape[1]
    channels = mean_data.shape[2] if mean_data.ndim == 3 else 1

    data_mean = Blob((1, channels, height, width))
    host_to_blob(mean_data, data_mean, DATA)
    persistence.save_mean(mean_proto_file, data_mean.data)
    return ()


@command('init_log', "Usage: caffe_('init_log', log_base_filename)")
def init_log(args):
    check(len(args) == 1 and is_char(args[0]), "Usage: caffe_('init_log', log_base_filename)")
    log.init_log(args[0])
    return ()


# ============================================================================
# ENTRY POINTS
# ============================================================================

def find_command(name: str) -> Command:
    for entry in HANDLERS:
        if entry.name == name:
            return entry
    raise UnknownCommandError(name)


def _on_first_call() -> None:
    global _first_call_done

    _first_call_done = True
    settings = Settings.from_env()
    if settings.log_dir and not log.is_log_inited():
        log.init_default_log(settings.log_dir)


def dispatch(api_command: Any, *args: Any) -> List[Any]:
    """
    Run one command.

    Args:
        api_command: Command name
        *args: Command arguments

    Returns:
        The command's outputs (possibly empty)

    Raises:
        CaffeShimError: On any failure. Errors raised by the framework are
            re-raised as FrameworkError.
    """
    if not _first_call_done:
        _on_first_call()

    check(is_char(api_command), "Usage: caffe_(api_command, arg1, arg2, ...)")
    entry = find_command(api_command)
    logger.debug(f"Dispatching '{api_command}' with {len(args)} argument(s)")

    try:
        outputs = entry.handler(args)
    except CaffeShimError:
        raise
    except Exception as e:
        logger.error(f"{api_command} failed: {e}")
        raise FrameworkError(f"{api_command} failed: {e}") from e
    return list(outputs)


def caffe_(api_command: Any, *args: Any) -> Any:
    """
    Run one command and return its single output (None when it has none).
    """
    outputs = dispatch(api_command, *args)
    if not outputs:
        return None
    if len(outputs) == 1:
        return outputs[0]
    return tuple(outputs)


def passthrough(*args: Any, nargout: int = 0) -> List[Any]:
    """
    Run a command and return exactly nargout outputs.

    Raises:
        UsageError: If the command produced fewer than nargout outputs
    """
    check(len(args) > 0, "Usage: caffe_(api_command, arg1, arg2, ...)")
    outputs = dispatch(*args)
    if nargout > len(outputs):
        raise UsageError("One or more output arguments not assigned during call")
    return outputs[:nargout]
