"""
test_commands.py
~~~~~~~~~~~~~~~~

Tests for the command table: argument checks, handle resolution, array
conversion and error mapping, driven through caffe_() and dispatch().
"""

import glob
import json
import logging
import os

import numpy as np
import pytest

from caffeshim import commands, log
from caffeshim.commands import HANDLERS, caffe_, dispatch, find_command, passthrough
from caffeshim.errors import (
    CaffeShimError,
    FrameworkError,
    InvalidHandleError,
    MissingFileError,
    StaleHandleError,
    UnknownCommandError,
    UsageError,
)
from caffeshim.framework import mode
from caffeshim.handles import Handle, get_registry


@pytest.fixture
def clean_log(monkeypatch):
    """Start without a log file and detach any file opened by the test."""
    monkeypatch.setattr(log, '_file_handler', None)
    yield
    if log._file_handler is not None:
        logging.getLogger('caffeshim').removeHandler(log._file_handler)
        log._file_handler.close()


@pytest.fixture
def train_net(net_file):
    return caffe_('get_net', net_file, 'train')


def _blob_handle(h_net, name):
    attributes = caffe_('net_get_attr', h_net)
    return attributes['hBlob_blobs'][attributes['blob_names'].index(name)]


def _layer_handle(h_net, name):
    attributes = caffe_('net_get_attr', h_net)
    return attributes['hLayer_layers'][attributes['layer_names'].index(name)]


@pytest.mark.unit
class TestDispatch:
    """Test command lookup and the return conventions."""

    def test_command_names_are_unique(self):
        names = [entry.name for entry in HANDLERS]
        assert len(names) == len(set(names))

    def test_multi_gpu_commands_are_not_registered(self):
        names = {entry.name for entry in HANDLERS}
        assert 'get_init_key' in names
        assert not any(name.startswith('nccl') for name in names)

    def test_unknown_command(self):
        with pytest.raises(UnknownCommandError) as exc_info:
            dispatch('net_fly')
        assert str(exc_info.value) == "Unknown command 'net_fly'"
        assert exc_info.value.status_code == 404

    def test_command_name_must_be_string(self):
        with pytest.raises(UsageError):
            dispatch(42)

    def test_find_command(self):
        entry = find_command('get_net')
        assert entry.usage == "Usage: caffe_('get_net', model_file, phase_name)"

    def test_caffe_return_conventions(self, net_file):
        assert caffe_('set_mode_cpu') is None
        assert isinstance(caffe_('get_init_key'), float)
        assert isinstance(caffe_('get_net', net_file, 'test'), Handle)

    def test_passthrough_nargout(self):
        assert passthrough('set_mode_cpu') == []
        key, = passthrough('get_init_key', nargout=1)
        assert key == get_registry().init_key

    def test_passthrough_too_many_outputs(self):
        with pytest.raises(UsageError) as exc_info:
            passthrough('set_mode_cpu', nargout=1)
        assert "output arguments not assigned" in str(exc_info.value)

    def test_passthrough_needs_command(self):
        with pytest.raises(UsageError):
            passthrough()

    def test_framework_errors_are_wrapped(self, train_net):
        with pytest.raises(FrameworkError) as exc_info:
            caffe_('net_forward', train_net, 0.0, 10.0)
        assert str(exc_info.value).startswith('net_forward failed:')
        assert isinstance(exc_info.value.__cause__, IndexError)


@pytest.mark.unit
class TestArgumentChecks:
    """Test usage errors raised before any framework call."""

    @pytest.mark.parametrize('args', [
        (),
        ('only_model.json',),
        ('a.json', 'train', 'extra'),
        (1.0, 'train'),
    ])
    def test_get_net_usage(self, args):
        with pytest.raises(UsageError) as exc_info:
            caffe_('get_net', *args)
        assert str(exc_info.value) == "Usage: caffe_('get_net', model_file, phase_name)"

    def test_missing_file(self, tmp_path):
        missing = str(tmp_path / 'nope.json')
        with pytest.raises(MissingFileError) as exc_info:
            caffe_('get_net', missing, 'train')
        assert str(exc_info.value) == f"Could not open file {missing}"

    def test_unknown_phase(self, net_file):
        with pytest.raises(UsageError) as exc_info:
            caffe_('get_net', net_file, 'deploy')
        assert str(exc_info.value) == "Unknown phase"

    def test_handle_argument_must_be_struct(self):
        with pytest.raises(UsageError):
            caffe_('net_get_attr', 'not a handle')

    def test_set_data_requires_float32(self, train_net):
        h_blob = _blob_handle(train_net, 'data')
        with pytest.raises(UsageError):
            caffe_('blob_set_data', h_blob, np.zeros((3, 4)))

    def test_step_rejects_bool(self, solver_file):
        h_solver = caffe_('get_solver', solver_file)
        with pytest.raises(UsageError):
            caffe_('solver_step', h_solver, True)

    def test_process_commands_take_no_arguments(self):
        for name in ('set_mode_cpu', 'set_mode_gpu', 'get_init_key', 'reset'):
            with pytest.raises(UsageError):
                caffe_(name, 1.0)


@pytest.mark.unit
class TestHandles:
    """Test handle issue, resolution and invalidation through commands."""

    def test_handles_carry_current_key(self, train_net):
        assert train_net.init_key == caffe_('get_init_key')

    def test_reset_invalidates_handles(self, train_net):
        h_blob = _blob_handle(train_net, 'data')
        old_key = caffe_('get_init_key')

        caffe_('reset')

        assert caffe_('get_init_key') != old_key
        with pytest.raises(StaleHandleError) as exc_info:
            caffe_('blob_get_shape', h_blob)
        assert "invalid init_key" in str(exc_info.value)
        with pytest.raises(StaleHandleError):
            caffe_('net_get_attr', train_net)

    def test_reset_releases_owned_objects(self, train_net, solver_file):
        caffe_('get_solver', solver_file)
        registry = get_registry()
        assert len(registry.nets) == 1
        assert len(registry.solvers) == 1

        caffe_('reset')

        assert registry.nets == []
        assert registry.solvers == []

    def test_handle_as_mapping(self, train_net):
        attributes = caffe_('net_get_attr', train_net.to_dict())
        assert attributes['layer_names'] == ['ip1', 'relu1', 'ip2', 'loss']

    def test_wrong_kind_of_handle(self, train_net):
        with pytest.raises(InvalidHandleError) as exc_info:
            caffe_('blob_get_shape', train_net)
        assert "expected a Blob" in str(exc_info.value)

    def test_same_object_same_pointer(self, train_net):
        first = caffe_('net_get_attr', train_net)['hBlob_blobs']
        second = caffe_('net_get_attr', train_net)['hBlob_blobs']
        assert first == second


@pytest.mark.integration
class TestNetCommands:
    """Test net commands end to end."""

    def test_net_get_attr(self, train_net):
        attributes = caffe_('net_get_attr', train_net)

        assert attributes['blob_names'] == ['data', 'label', 'ip1', 'ip2', 'loss']
        assert len(attributes['hLayer_layers']) == 4
        assert len(attributes['hBlob_blobs']) == 5
        np.testing.assert_array_equal(attributes['input_blob_indices'], [0, 1])
        np.testing.assert_array_equal(attributes['output_blob_indices'], [4])
        assert attributes['input_blob_indices'].dtype == np.int64

    def test_blob_shape_is_reversed(self, train_net):
        shape = caffe_('blob_get_shape', _blob_handle(train_net, 'data'))
        np.testing.assert_array_equal(shape, [3.0, 4.0])

    def test_scalar_blob_shape_is_empty(self, train_net):
        shape = caffe_('blob_get_shape', _blob_handle(train_net, 'loss'))
        assert shape.shape == (0,)

    def test_blob_reshape(self, train_net):
        h_blob = _blob_handle(train_net, 'data')
        caffe_('blob_reshape', h_blob, np.array([3.0, 10.0]))
        np.testing.assert_array_equal(caffe_('blob_get_shape', h_blob), [3.0, 10.0])

    def test_blob_reshape_rejects_fractional(self, train_net):
        with pytest.raises(UsageError):
            caffe_('blob_reshape', _blob_handle(train_net, 'data'), np.array([2.5, 4.0]))

    def test_data_round_trip(self, train_net):
        h_blob = _blob_handle(train_net, 'data')
        host = np.arange(12, dtype=np.float32).reshape(3, 4)

        caffe_('blob_set_data', h_blob, host)

        np.testing.assert_array_equal(caffe_('blob_get_data', h_blob), host)

    def test_set_data_count_mismatch(self, train_net):
        with pytest.raises(UsageError) as exc_info:
            caffe_('blob_set_data', _blob_handle(train_net, 'data'), np.zeros(5, dtype=np.float32))
        assert "number of elements" in str(exc_info.value)

    def test_forward_and_backward(self, train_net, regression_batch):
        data, label = regression_batch
        caffe_('blob_set_data', _blob_handle(train_net, 'data'), data.T.copy())
        caffe_('blob_set_data', _blob_handle(train_net, 'label'), label.T.copy())

        caffe_('net_forward', train_net)
        loss = caffe_('blob_get_data', _blob_handle(train_net, 'loss'))
        caffe_('net_backward', train_net)
        h_weights = caffe_('layer_get_attr', _layer_handle(train_net, 'ip2'))['hBlob_blobs'][0]

        assert loss.shape == (1,)
        assert loss[0] > 0
        assert np.abs(caffe_('blob_get_diff', h_weights)).sum() > 0

    def test_backward_before_forward(self, train_net):
        caffe_('net_backward', train_net)

        h_data = _blob_handle(train_net, 'data')
        h_weights = caffe_('layer_get_attr', _layer_handle(train_net, 'ip2'))['hBlob_blobs'][0]
        np.testing.assert_array_equal(caffe_('blob_get_diff', h_data), np.zeros((3, 4)))
        np.testing.assert_array_equal(caffe_('blob_get_diff', h_weights), np.zeros((5, 2)))

    def test_softmax_loss_backward_before_forward(self, classifier_net_file):
        h_net = caffe_('get_net', classifier_net_file, 'train')

        caffe_('net_backward', h_net)

        np.testing.assert_array_equal(
            caffe_('blob_get_diff', _blob_handle(h_net, 'ip')), np.zeros((3, 8))
        )

    def test_copy_from_plain_array_file(self, train_net, tmp_path):
        weights_file = str(tmp_path / 'weights.npy')
        with open(weights_file, 'wb') as f:
            np.save(f, np.zeros(3))

        with pytest.raises(FrameworkError):
            caffe_('net_copy_from', train_net, weights_file)

    def test_blob_read_by_two_layers(self, tmp_path):
        model_file = tmp_path / 'two_heads.json'
        model_file.write_text(json.dumps({
            'input': ['data'],
            'input_shape': [{'dim': [2, 3]}],
            'layer': [
                {'name': 'a', 'type': 'ReLU', 'bottom': ['data'], 'top': ['a']},
                {'name': 'b', 'type': 'TanH', 'bottom': ['data'], 'top': ['b']}
            ]
        }))
        h_net = caffe_('get_net', str(model_file), 'test')
        host = np.array([[-1.0, 0.5], [2.0, -0.5], [0.0, 1.0]], dtype=np.float32)

        caffe_('blob_set_data', _blob_handle(h_net, 'data'), host)
        caffe_('net_forward', h_net)

        attributes = caffe_('net_get_attr', h_net)
        assert [attributes['blob_names'][i] for i in attributes['output_blob_indices']] == ['a', 'b']
        np.testing.assert_array_equal(caffe_('blob_get_data', _blob_handle(h_net, 'a')), np.maximum(host, 0))
        np.testing.assert_allclose(caffe_('blob_get_data', _blob_handle(h_net, 'b')), np.tanh(host), rtol=1e-6)

    def test_forward_range(self, train_net):
        caffe_('net_forward', train_net, 0.0, 1.0)
        caffe_('net_forward', train_net, 2.0)
        caffe_('net_backward', train_net, 3.0, 2.0)
        caffe_('net_backward', train_net, 1.0)

    def test_layer_commands(self, train_net):
        h_layer = _layer_handle(train_net, 'ip1')

        assert caffe_('layer_get_type', h_layer) == 'InnerProduct'
        params = caffe_('layer_get_attr', h_layer)['hBlob_blobs']
        np.testing.assert_array_equal(caffe_('blob_get_shape', params[0]), [3.0, 5.0])
        np.testing.assert_array_equal(caffe_('blob_get_shape', params[1]), [5.0])

    def test_set_diff(self, train_net):
        h_blob = _blob_handle(train_net, 'ip2')
        diff = np.ones((2, 4), dtype=np.float32)
        caffe_('blob_set_diff', h_blob, diff)
        np.testing.assert_array_equal(caffe_('blob_get_diff', h_blob), diff)

    def test_save_and_copy_from(self, train_net, net_file, tmp_path):
        weights_file = str(tmp_path / 'out' / 'tiny.caffemodel')
        caffe_('net_save', train_net, weights_file)
        h_test = caffe_('get_net', net_file, 'test')

        caffe_('net_copy_from', h_test, weights_file)

        for layer in ('ip1', 'ip2'):
            trained = caffe_('layer_get_attr', _layer_handle(train_net, layer))['hBlob_blobs']
            copied = caffe_('layer_get_attr', _layer_handle(h_test, layer))['hBlob_blobs']
            for a, b in zip(trained, copied):
                np.testing.assert_array_equal(caffe_('blob_get_data', a), caffe_('blob_get_data', b))

    def test_copy_from_missing_file(self, train_net, tmp_path):
        with pytest.raises(MissingFileError):
            caffe_('net_copy_from', train_net, str(tmp_path / 'missing.caffemodel'))

    def test_net_reshape(self, train_net):
        caffe_('blob_reshape', _blob_handle(train_net, 'data'), np.array([3.0, 6.0]))
        caffe_('blob_reshape', _blob_handle(train_net, 'label'), np.array([2.0, 6.0]))

        caffe_('net_reshape', train_net)

        np.testing.assert_array_equal(
            caffe_('blob_get_shape', _blob_handle(train_net, 'ip2')), [2.0, 6.0]
        )


@pytest.mark.integration
class TestSolverCommands:
    """Test solver commands end to end."""

    def test_get_solver_and_attrs(self, solver_file):
        h_solver = caffe_('get_solver', solver_file)
        attributes = caffe_('solver_get_attr', h_solver)

        assert isinstance(attributes['hNet_net'], Handle)
        assert len(attributes['hNet_test_nets']) == 1
        assert caffe_('solver_get_iter', h_solver) == 0.0

    def test_step_and_iter(self, solver_file):
        h_solver = caffe_('get_solver', solver_file)
        caffe_('solver_step', h_solver, 5.0)
        caffe_('solver_step', h_solver, np.array([2.0]))
        assert caffe_('solver_get_iter', h_solver) == 7.0

    def test_negative_step(self, solver_file):
        h_solver = caffe_('get_solver', solver_file)
        with pytest.raises(FrameworkError):
            caffe_('solver_step', h_solver, -1.0)

    def test_infinite_step_count(self, solver_file):
        h_solver = caffe_('get_solver', solver_file)
        with pytest.raises(FrameworkError) as exc_info:
            caffe_('solver_step', h_solver, float('inf'))
        assert isinstance(exc_info.value.__cause__, OverflowError)

    def test_zero_stepsize(self, tmp_path, net_file, solver_params):
        solver_file = tmp_path / 'step_solver.json'
        solver_file.write_text(json.dumps(dict(solver_params, lr_policy='step', stepsize=0)))
        h_solver = caffe_('get_solver', str(solver_file))

        with pytest.raises(FrameworkError) as exc_info:
            caffe_('solver_step', h_solver, 1.0)
        assert isinstance(exc_info.value.__cause__, ZeroDivisionError)

    def test_solve(self, solver_file):
        h_solver = caffe_('get_solver', solver_file)
        caffe_('solver_solve', h_solver)
        assert caffe_('solver_get_iter', h_solver) == 30.0

    def test_snapshot_and_restore(self, solver_file, tmp_path):
        h_solver = caffe_('get_solver', solver_file)
        caffe_('solver_step', h_solver, 4.0)
        caffe_('solver_snapshot', h_solver, '')
        state_file = str(tmp_path / 'snapshots' / 'tiny_iter_4.solverstate')
        assert os.path.exists(state_file)

        h_fresh = caffe_('get_solver', solver_file)
        caffe_('solver_restore', h_fresh, state_file)

        assert caffe_('solver_get_iter', h_fresh) == 4.0

    def test_named_snapshot(self, solver_file, tmp_path):
        h_solver = caffe_('get_solver', solver_file)
        caffe_('solver_snapshot', h_solver, str(tmp_path / 'named'))
        assert os.path.exists(tmp_path / 'named.caffemodel')
        assert os.path.exists(tmp_path / 'named.solverstate')

    def test_restore_missing_file(self, solver_file, tmp_path):
        h_solver = caffe_('get_solver', solver_file)
        with pytest.raises(MissingFileError):
            caffe_('solver_restore', h_solver, str(tmp_path / 'missing.solverstate'))

    def test_unknown_solver_type(self, tmp_path, net_file):
        solver_file = tmp_path / 'bad_solver.json'
        solver_file.write_text('{"net": "tiny_net.json", "type": "Adamax"}')
        with pytest.raises(FrameworkError) as exc_info:
            caffe_('get_solver', str(solver_file))
        assert "Unknown solver type" in str(exc_info.value)


@pytest.mark.unit
class TestProcessCommands:
    """Test mode, device, mean file and logging commands."""

    def test_mode_and_device(self):
        caffe_('set_mode_gpu')
        caffe_('set_device', 1.0)
        assert mode.get_mode() == mode.GPU
        assert mode.get_device() == 1

        caffe_('set_mode_cpu')
        assert mode.get_mode() == mode.CPU

    def test_negative_device(self):
        with pytest.raises(FrameworkError):
            caffe_('set_device', -1.0)

    def test_mean_round_trip(self, tmp_path):
        mean_file = str(tmp_path / 'mean.binaryproto')
        mean = np.random.rand(4, 3, 2).astype(np.float32)

        caffe_('write_mean', mean, mean_file)
        restored = caffe_('read_mean', mean_file)

        assert restored.shape == (4, 3, 2, 1)
        np.testing.assert_array_equal(restored[..., 0], mean)

    def test_mean_single_channel(self, tmp_path):
        mean_file = str(tmp_path / 'gray.binaryproto')
        caffe_('write_mean', np.ones((5, 6), dtype=np.float32), mean_file)
        assert caffe_('read_mean', mean_file).shape == (5, 6, 1, 1)

    def test_write_mean_dimensions(self, tmp_path):
        with pytest.raises(UsageError) as exc_info:
            caffe_('write_mean', np.ones(4, dtype=np.float32), str(tmp_path / 'm'))
        assert str(exc_info.value) == "mean_data must have 2 or 3 dimensions"

    def test_read_mean_bad_file(self, tmp_path):
        bad = tmp_path / 'bad.binaryproto'
        bad.write_text('not a mean')
        with pytest.raises(CaffeShimError) as exc_info:
            caffe_('read_mean', str(bad))
        assert str(exc_info.value) == "Could not read your mean file"

    def test_init_log(self, tmp_path, clean_log):
        log_file = tmp_path / 'logs' / 'run.txt'

        caffe_('init_log', str(log_file))
        caffe_('set_mode_cpu')

        content = log_file.read_text()
        assert 'Logging to' in content
        assert 'Mode set to cpu' in content

    def test_init_log_replaces_previous_file(self, tmp_path, clean_log):
        caffe_('init_log', str(tmp_path / 'first.txt'))
        caffe_('init_log', str(tmp_path / 'second.txt'))
        caffe_('set_device', 3.0)

        assert 'Device set to 3' not in (tmp_path / 'first.txt').read_text()
        assert 'Device set to 3' in (tmp_path / 'second.txt').read_text()

    def test_default_log_on_first_call(self, tmp_path, monkeypatch, clean_log):
        monkeypatch.setenv('CAFFESHIM_LOG_DIR', str(tmp_path))
        monkeypatch.setattr(commands, '_first_call_done', False)

        caffe_('get_init_key')

        assert len(glob.glob(str(tmp_path / 'INFO*.txt'))) == 1
        assert commands._first_call_done
