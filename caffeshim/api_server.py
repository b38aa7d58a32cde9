"""
api_server.py
~~~~~~~~~~~~~

Flask-based JSON endpoint that exposes the command table to remote hosts.

This module provides endpoints for:
- Running any command: POST /api/caffe {"command": ..., "args": [...]}
- Listing commands and their usage strings
- Resetting the registry
- Reporting registry status

Solver progress is pushed to connected clients over Flask-SocketIO as
'solver_progress' events.

Wire format:
- Handles travel as {"ptr": int, "init_key": float}
- Arrays travel as {"__ndarray__": [...], "shape": [...], "dtype": str}
  with the values listed in column-major (host) order; non-finite values
  are the strings "NaN", "Infinity" and "-Infinity"
- Lists of plain numbers are received as float64 arrays

Commands are serialized with a gevent semaphore; the registry is not
thread-safe.
"""

import sys
import json
import math
import logging
from typing import Any, Dict

import gevent
from gevent.lock import BoundedSemaphore
import numpy as np
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO

from caffeshim.commands import HANDLERS, dispatch
from caffeshim.config import Settings
from caffeshim.errors import CaffeShimError
from caffeshim.framework import mode
from caffeshim.framework.solver import SGDSolver
from caffeshim.handles import Handle, get_registry
from caffeshim.log import configure_logging

settings = Settings.from_env()
configure_logging(settings)
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/api/*": {"origins": settings.cors_origins}})

socketio = SocketIO(
    app,
    cors_allowed_origins=settings.cors_origins,
    async_mode='gevent',
    logger=not settings.is_production,
    engineio_logger=not settings.is_production
)

# One command at a time; solver steps yield to the hub while holding it
_dispatch_lock = BoundedSemaphore(1)


# ============================================================================
# WIRE CODEC
# ============================================================================

# Non-finite floats travel as these strings
NON_FINITE = {'NaN': float('nan'), 'Infinity': float('inf'), '-Infinity': float('-inf')}


def _finite_or_token(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return 'NaN'
        return 'Infinity' if value > 0 else '-Infinity'
    return value


class ShimEncoder(json.JSONEncoder):
    """JSON encoder for handles, numpy arrays and numpy scalars."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Handle):
            return obj.to_dict()
        if isinstance(obj, np.ndarray):
            values = obj.ravel(order='F').tolist()
            if obj.dtype.kind == 'f':
                values = [_finite_or_token(value) for value in values]
            return {
                '__ndarray__': values,
                'shape': list(obj.shape),
                'dtype': str(obj.dtype)
            }
        if isinstance(obj, np.generic):
            return _finite_or_token(obj.item())
        return super().default(obj)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def decode_value(value: Any) -> Any:
    """
    Turn a JSON argument into the value a command expects.

    Raises:
        CaffeShimError: If an encoded array is malformed
    """
    if isinstance(value, dict):
        if '__ndarray__' in value:
            try:
                values = [
                    NON_FINITE.get(item, item) if isinstance(item, str) else item
                    for item in value['__ndarray__']
                ]
                return np.asarray(
                    values, dtype=value.get('dtype', 'float64')
                ).reshape(value.get('shape', [-1]), order='F')
            except (TypeError, ValueError) as e:
                raise CaffeShimError(f"Malformed array argument: {e}") from e
        if 'ptr' in value and 'init_key' in value:
            return Handle.from_value(value)
        return {key: decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        if value and all(_is_number(item) for item in value):
            return np.asarray(value, dtype=np.float64)
        return [decode_value(item) for item in value]
    return value


def encode_response(payload: Dict[str, Any], status: int = 200) -> Response:
    """
    Serialize a payload as strict JSON.

    Raises:
        CaffeShimError: If a plain float in the payload is not finite
    """
    try:
        body = json.dumps(payload, cls=ShimEncoder, allow_nan=False)
    except ValueError as e:
        raise CaffeShimError(f"Result cannot be encoded as JSON: {e}") from e
    return Response(
        body,
        status=status,
        mimetype='application/json'
    )


# ============================================================================
# SOLVER PROGRESS
# ============================================================================

def emit_solver_progress(handle: Handle, stats: Dict[str, Any]) -> None:
    """Push one iteration's stats to connected clients."""
    socketio.emit('solver_progress', {
        'solver': handle.to_dict(),
        'iter': stats['iter'],
        'loss': _finite_or_token(float(stats['loss'])),
        'smoothed_loss': _finite_or_token(float(stats['smoothed_loss'])),
        'lr': _finite_or_token(float(stats['lr']))
    })
    # Let gevent send the message immediately
    gevent.sleep(0)


def _watch_solver(handle: Handle) -> None:
    solver = get_registry().resolve(handle, SGDSolver)
    solver.add_callback(lambda stats: emit_solver_progress(handle, stats))


# ============================================================================
# ERROR HANDLING
# ============================================================================

@app.errorhandler(CaffeShimError)
def handle_shim_error(error: CaffeShimError):
    logger.warning(f"{type(error).__name__}: {error}")
    return jsonify({
        'error': str(error),
        'type': type(error).__name__
    }), error.status_code


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return registry counts, the current init key and the compute mode."""
    registry = get_registry()
    return jsonify({
        'status': 'online',
        'solvers': len(registry.solvers),
        'nets': len(registry.nets),
        'init_key': registry.init_key,
        'mode': mode.get_mode(),
        'device': mode.get_device()
    }), 200


@app.route('/api/commands', methods=['GET'])
def list_commands():
    """List every command with its usage string."""
    return jsonify({
        'commands': [
            {'name': entry.name, 'usage': entry.usage} for entry in HANDLERS
        ]
    }), 200


@app.route('/api/caffe', methods=['POST'])
def run_command():
    """
    Run one command.

    Request body:
        {'command': 'blob_get_data', 'args': [{'ptr': ..., 'init_key': ...}]}

    Returns:
        JSON with the list of outputs
    """
    data = request.get_json(silent=True) or {}
    api_command = data.get('command')
    raw_args = data.get('args', [])

    if not isinstance(api_command, str) or not isinstance(raw_args, list):
        return jsonify({
            'error': "Request must be {'command': str, 'args': list}"
        }), 400

    args = [decode_value(arg) for arg in raw_args]

    try:
        with _dispatch_lock:
            outputs = dispatch(api_command, *args)
            if api_command == 'get_solver':
                _watch_solver(outputs[0])
    except CaffeShimError:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error running '{api_command}': {e}")
        return jsonify({'error': 'Internal server error'}), 500

    logger.debug(f"Command '{api_command}' returned {len(outputs)} output(s)")
    return encode_response({'command': api_command, 'outputs': outputs})


@app.route('/api/reset', methods=['POST'])
def reset_registry():
    """Release all solvers and nets and invalidate every handle."""
    registry = get_registry()
    with _dispatch_lock:
        solvers, nets = len(registry.solvers), len(registry.nets)
        dispatch('reset')

    return jsonify({
        'cleared_solvers': solvers,
        'cleared_nets': nets,
        'init_key': registry.init_key,
        'message': f'Cleared {solvers} solvers and {nets} stand-alone nets'
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = settings.port

    if settings.is_production:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not settings.is_production,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
