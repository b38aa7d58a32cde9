"""
caffeshim.framework
~~~~~~~~~~~~~~~~~~~

numpy framework wrapped by the binding: blobs, layers, nets, solvers and
the process-wide compute mode.
"""

from caffeshim.framework.blob import Blob
from caffeshim.framework.layers import LAYERS, Layer, create_layer, register_layer
from caffeshim.framework.net import Net, TRAIN, TEST, PHASES
from caffeshim.framework.solver import SOLVERS, SGDSolver, NesterovSolver, create_solver
from caffeshim.framework import mode

__all__ = [
    'Blob',
    'LAYERS',
    'Layer',
    'create_layer',
    'register_layer',
    'Net',
    'TRAIN',
    'TEST',
    'PHASES',
    'SOLVERS',
    'SGDSolver',
    'NesterovSolver',
    'create_solver',
    'mode',
]
