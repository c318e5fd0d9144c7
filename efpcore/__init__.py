"""efpcore: Effective Fragment Potential energy and gradient engine."""

import logging

from .backend import NUMBA_AVAILABLE, require_numba
from .results import Result, EfpError, result_to_string
from .options import (
    Terms,
    ElecDamp,
    DispDamp,
    PolDamp,
    CoordType,
    Options,
    check_opts,
    check_params_frag,
)
from .rigid import (
    euler_to_matrix,
    matrix_to_euler,
    check_rotation_matrix,
    points_to_matrix,
    apply_rigid_transform,
    torque_to_deriv,
)
from .fragment import Fragment, Shell, update_fragment, set_pose
from .potential import (
    FragmentLibrary,
    read_potential,
    write_potential,
    template_from_dict,
    template_to_dict,
    instantiate,
)
from .water import make_water_template
from .efp import Efp, Energy, Callbacks, Atom, TERM_LIST, shutdown

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "NUMBA_AVAILABLE",
    "require_numba",
    "Result",
    "EfpError",
    "result_to_string",
    "Terms",
    "ElecDamp",
    "DispDamp",
    "PolDamp",
    "CoordType",
    "Options",
    "check_opts",
    "check_params_frag",
    "euler_to_matrix",
    "matrix_to_euler",
    "check_rotation_matrix",
    "points_to_matrix",
    "apply_rigid_transform",
    "torque_to_deriv",
    "Fragment",
    "Shell",
    "update_fragment",
    "set_pose",
    "FragmentLibrary",
    "read_potential",
    "write_potential",
    "template_from_dict",
    "template_to_dict",
    "instantiate",
    "make_water_template",
    "Efp",
    "Energy",
    "Callbacks",
    "Atom",
    "TERM_LIST",
    "shutdown",
]
