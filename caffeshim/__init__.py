"""
caffeshim package
~~~~~~~~~~~~~~~~~

Handle registry and command dispatch binding for a numpy deep-learning
framework. Solvers, nets, layers and blobs are exposed to the host as
opaque handles; data crosses the boundary with its axis order reversed.
"""

from caffeshim.commands import caffe_, dispatch, passthrough
from caffeshim.errors import (
    CaffeShimError,
    FrameworkError,
    InvalidHandleError,
    MissingFileError,
    StaleHandleError,
    UnknownCommandError,
    UsageError,
)
from caffeshim.handles import Handle, HandleRegistry, get_registry
from caffeshim.wrappers import (
    Blob,
    Layer,
    Net,
    Solver,
    get_init_key,
    get_net,
    get_solver,
    init_log,
    read_mean,
    reset_all,
    set_device,
    set_mode_cpu,
    set_mode_gpu,
    write_mean,
)

__version__ = "1.0.0"
