"""Simulation context: lifecycle, geometry pipeline, term dispatch and accessors."""

import logging
from dataclasses import dataclass, fields, replace
from typing import Callable, NamedTuple, Optional

import numpy as np

from .disp import compute_disp
from .elec import compute_ai_elec, compute_elec
from .fragment import set_pose
from .options import CoordType, DispDamp, Terms, check_opts, check_params_frag
from .pol import compute_pol, compute_pol_energy
from .potential import FragmentLibrary, instantiate, read_potential
from .results import EfpError, Result
from .rigid import (
    check_rotation_matrix,
    euler_to_matrix,
    matrix_to_euler,
    points_to_matrix,
)
from .xr import compute_xr

logger = logging.getLogger(__name__)

# Exchange repulsion fills the overlap buffers read by later terms, so it runs first
TERM_LIST = (
    compute_xr,
    compute_elec,
    compute_pol,
    compute_disp,
    compute_ai_elec,
)


@dataclass
class Energy:
    """Energy breakdown of the last compute() call, hartree.

    Disabled terms contribute zero. total is always the sum of the ten
    components.
    """
    electrostatic: float = 0.0
    charge_penetration: float = 0.0
    polarization: float = 0.0
    dispersion: float = 0.0
    exchange_repulsion: float = 0.0
    charge_transfer: float = 0.0
    ai_electrostatic: float = 0.0
    ai_dispersion: float = 0.0
    ai_exchange_repulsion: float = 0.0
    ai_charge_transfer: float = 0.0

    @property
    def total(self):
        return sum(getattr(self, f.name) for f in fields(self))


@dataclass
class Callbacks:
    """Hooks into the caller's ab initio code.

    Attributes:
        get_electron_density_field: Maps points, shape (n, 3), to the field
            of the QM electron density at those points, shape (n, 3)
    """
    get_electron_density_field: Optional[Callable] = None


class Atom(NamedTuple):
    label: str
    x: float
    y: float
    z: float
    mass: float
    znuc: float


class Efp:
    """EFP simulation context.

    A context is created empty and becomes live after a successful
    initialize(). Every other operation requires a live context and raises
    EfpError(NOT_INITIALIZED) otherwise. A failed initialize() leaves the
    context non-live; shutdown() is always safe to call.

    Example:
        efp = Efp()
        efp.initialize(Options.default(), "water.json", "water\\nwater",
                       Callbacks(get_electron_density_field=field_fn))
        efp.set_coordinates(CoordType.XYZABC, coords)
        efp.compute(do_gradient=True)
        energy = efp.get_energy().total
        efp.shutdown()
    """

    def __init__(self):
        self.opts = None
        self.callbacks = None
        self.lib = None
        self.frags = []
        self.box = None
        self.stress = np.zeros((3, 3))
        self.energy = Energy()
        self.do_gradient = False
        self.qm_znuc = np.zeros(0)
        self.qm_xyz = np.zeros((0, 3))
        self.qm_grad = np.zeros((0, 3))
        self._live = False

    @property
    def n_qm_atoms(self):
        return self.qm_znuc.shape[0]

    @property
    def initialized(self):
        return self._live

    def _check_live(self):
        if not self._live:
            raise EfpError(Result.NOT_INITIALIZED)

    def _check_frag_index(self, frag_idx):
        if not isinstance(frag_idx, (int, np.integer)) or not 0 <= frag_idx < len(self.frags):
            raise EfpError(Result.INDEX_OUT_OF_RANGE, f"fragment index {frag_idx}")
        return self.frags[frag_idx]

    def _check_gradient(self):
        if not self.do_gradient:
            raise EfpError(Result.GRADIENT_NOT_REQUESTED)

    # Lifecycle

    def initialize(self, opts, potential, frag_names, callbacks=None):
        """Validate options, load templates and create fragment instances.

        Args:
            opts: Options instance
            potential: Newline-delimited list of potential files, or a
                FragmentLibrary; the context keeps its own copy of it
            frag_names: Newline-delimited string or sequence of fragment names
            callbacks: Callbacks instance; required under AI_POL

        Raises:
            EfpError: INVALID_ARGUMENT, any option or parameter check failure,
                CALLBACK_NOT_SET, FILE_NOT_FOUND, SYNTAX_ERROR,
                UNSUPPORTED_SCREEN, DUPLICATE_PARAMETERS, UNKNOWN_FRAGMENT,
                NO_MEMORY
        """
        if self._live:
            raise EfpError(Result.INVALID_ARGUMENT, "context is already initialized")
        if opts is None or potential is None or frag_names is None:
            raise EfpError(Result.INVALID_ARGUMENT)
        if callbacks is not None and not isinstance(callbacks, Callbacks):
            raise EfpError(Result.INVALID_ARGUMENT, "callbacks must be a Callbacks instance")

        self.opts = check_opts(opts)

        if self.opts.terms & Terms.AI_POL:
            if callbacks is None or callbacks.get_electron_density_field is None:
                raise EfpError(Result.CALLBACK_NOT_SET, "get_electron_density_field")
        self.callbacks = replace(callbacks) if callbacks is not None else Callbacks()

        if isinstance(potential, FragmentLibrary):
            self.lib = potential.copy()
        else:
            self.lib = read_potential(potential)

        self.frags = instantiate(self.lib, frag_names)
        logger.debug("created %d fragment instances", len(self.frags))

        self._setup_overlap()
        self._setup_xr()

        for k, frag in enumerate(self.frags):
            check_params_frag(self.opts, frag, k)

        self._live = True

    def _setup_overlap(self):
        terms = self.opts.terms
        needed = bool(terms & Terms.XR) or (
            bool(terms & Terms.DISP) and self.opts.disp_damp == DispDamp.OVERLAP)
        if not needed:
            return

        try:
            for i, fr_i in enumerate(self.frags):
                fr_i.overlap_int = {}
                fr_i.overlap_int_deriv = {}
                for j in range(i + 1, len(self.frags)):
                    n_j = self.frags[j].n_lmo
                    fr_i.overlap_int[j] = np.zeros((fr_i.n_lmo, n_j))
                    fr_i.overlap_int_deriv[j] = np.zeros((fr_i.n_lmo, n_j, 3))
        except MemoryError:
            raise EfpError(Result.NO_MEMORY, "overlap buffers") from None
        logger.debug("allocated overlap buffers for %d fragments", len(self.frags))

    def _setup_xr(self):
        try:
            for frag in self.frags:
                frag.xr_wf_deriv = np.zeros((3, frag.n_lmo, frag.xr_wf_size))
        except MemoryError:
            raise EfpError(Result.NO_MEMORY, "wavefunction derivatives") from None

    def shutdown(self):
        """Release every fragment, the library and the QM atoms.

        Safe after a failed initialize() and on repeated calls.
        """
        for frag in self.frags:
            frag.release()
        self.frags = []
        self.lib = None
        self.opts = None
        self.callbacks = None
        self.box = None
        self.qm_znuc = np.zeros(0)
        self.qm_xyz = np.zeros((0, 3))
        self.qm_grad = np.zeros((0, 3))
        self._live = False

    # Geometry

    def set_coordinates(self, coord_type, coords):
        """Pose every fragment and refresh its lab-frame data.

        Input for all fragments is validated before any fragment changes.

        Args:
            coord_type: CoordType member (or its value)
            coords: Flat or per-fragment records of coord_type.stride values

        Raises:
            EfpError: NOT_INITIALIZED, INVALID_ARGUMENT, INCORRECT_ENUM_VALUE,
                INVALID_ARRAY_SIZE, NEED_THREE_ATOMS, INVALID_ROTATION_MATRIX
        """
        self._check_live()
        if coords is None:
            raise EfpError(Result.INVALID_ARGUMENT)
        try:
            coord_type = CoordType(coord_type)
        except ValueError:
            raise EfpError(Result.INCORRECT_ENUM_VALUE, f"coord_type={coord_type!r}") from None

        try:
            coords = np.asarray(coords, dtype=np.float64)
        except (TypeError, ValueError):
            raise EfpError(Result.INVALID_ARGUMENT, "coordinates must be numeric") from None
        stride = coord_type.stride
        if coords.size != stride * len(self.frags):
            raise EfpError(Result.INVALID_ARRAY_SIZE,
                           f"expected {stride * len(self.frags)} values, got {coords.size}")
        records = coords.reshape(len(self.frags), stride)

        poses = [self._pose_from_record(coord_type, frag, rec, k)
                 for k, (frag, rec) in enumerate(zip(self.frags, records))]

        for frag, (x, R) in zip(self.frags, poses):
            set_pose(frag, x, R)

    @staticmethod
    def _pose_from_record(coord_type, frag, rec, index):
        if coord_type == CoordType.XYZABC:
            return rec[:3], euler_to_matrix(rec[3], rec[4], rec[5])

        if coord_type == CoordType.POINTS:
            if frag.n_atoms < 3:
                raise EfpError(Result.NEED_THREE_ATOMS, f"fragment {index} ({frag.name})")
            ref = frag.lib.atom_xyz[:3]
            pts = rec.reshape(3, 3)
            R = points_to_matrix(ref, pts)
            return pts[0] - R @ ref[0], R

        R = rec[3:].reshape(3, 3)
        if not check_rotation_matrix(R):
            raise EfpError(Result.INVALID_ROTATION_MATRIX, f"fragment {index} ({frag.name})")
        return rec[:3], R

    def get_coordinates(self, out=None):
        """Fragment poses as (x, y, z, a, b, c) rows, shape (n_frag, 6)."""
        self._check_live()
        result = np.empty((len(self.frags), 6))
        for k, frag in enumerate(self.frags):
            result[k, :3] = frag.x
            result[k, 3:] = matrix_to_euler(frag.rotmat)
        return self._deliver(result, out)

    def set_periodic_box(self, x, y, z):
        """Set the orthorhombic box; each side must be at least twice the cutoff."""
        self._check_live()
        try:
            x, y, z = float(x), float(y), float(z)
        except (TypeError, ValueError):
            raise EfpError(Result.INVALID_ARGUMENT, "box sides must be numbers") from None
        cutoff = self.opts.swf_cutoff
        if min(x, y, z) < 2.0 * cutoff:
            raise EfpError(Result.BOX_TOO_SMALL,
                           f"box ({x}, {y}, {z}) with cutoff {cutoff}")
        self.box = np.array([x, y, z], dtype=np.float64)

    def get_stress_tensor(self, out=None):
        """Stress tensor (virial) accumulated by the last gradient computation, shape (3, 3)."""
        self._check_live()
        self._check_gradient()
        return self._deliver(self.stress.copy(), out)

    # Computation

    def compute(self, do_gradient=False):
        """Run every interaction term once, in TERM_LIST order.

        The first failing term stops the computation; energies and
        gradients are then undefined.
        """
        self._check_live()

        self.do_gradient = bool(do_gradient)
        self.stress = np.zeros((3, 3))
        self.energy = Energy()
        for frag in self.frags:
            frag.force = np.zeros(3)
            frag.torque = np.zeros(3)
        self.qm_grad = np.zeros((self.n_qm_atoms, 3))

        for term in TERM_LIST:
            logger.debug("computing %s", term.__name__)
            term(self)

    def scf_update(self):
        """Polarization energy for the current QM wavefunction.

        Meant to be called from inside the caller's SCF loop; updates the
        induced dipoles.
        """
        self._check_live()
        return compute_pol_energy(self)

    # Accessors

    def get_energy(self):
        self._check_live()
        return replace(self.energy)

    def get_gradient(self, out=None):
        """Gradient records (fx, fy, fz, tx, ty, tz), shape (n_frag, 6).

        Torques are about each fragment's translation point.
        """
        self._check_live()
        self._check_gradient()
        result = np.empty((len(self.frags), 6))
        for k, frag in enumerate(self.frags):
            result[k, :3] = frag.force
            result[k, 3:] = frag.torque
        return self._deliver(result, out)

    def get_qm_gradient(self, out=None):
        self._check_live()
        self._check_gradient()
        return self._deliver(self.qm_grad.copy(), out)

    def get_qm_atom_count(self):
        self._check_live()
        return self.n_qm_atoms

    def set_qm_atoms(self, znuc, xyz):
        """Replace the QM atoms.

        Zero atoms releases the arrays. Invalid input leaves the previous atoms in place.

        Args:
            znuc: Nuclear charges, shape (n,)
            xyz: Positions, shape (n, 3) or (3n,)
        """
        self._check_live()
        if znuc is None or xyz is None:
            raise EfpError(Result.INVALID_ARGUMENT)

        try:
            znuc = np.array(znuc, dtype=np.float64).ravel()
            xyz = np.array(xyz, dtype=np.float64)
        except (TypeError, ValueError):
            raise EfpError(Result.INVALID_ARGUMENT, "QM atoms must be numeric") from None
        if xyz.size != 3 * znuc.size:
            raise EfpError(Result.INVALID_ARRAY_SIZE,
                           f"{znuc.size} charges and {xyz.size} coordinates")

        self.qm_znuc = znuc
        self.qm_xyz = xyz.reshape(znuc.size, 3)
        self.qm_grad = np.zeros((znuc.size, 3))

    def get_qm_atoms(self):
        """Copies of the QM nuclear charges and positions."""
        self._check_live()
        return self.qm_znuc.copy(), self.qm_xyz.copy()

    def get_multipole_count(self):
        """Number of charge, dipole, quadrupole and octupole sites."""
        self._check_live()
        n_mult = sum(frag.n_multipole_pts for frag in self.frags)
        n_atoms = sum(frag.n_atoms for frag in self.frags)
        n_pol = sum(frag.n_polarizable_pts for frag in self.frags)
        return (n_atoms + n_mult, n_pol + n_mult, n_mult, n_mult)

    def get_multipoles(self):
        """Lab-frame multipole sites grouped by order.

        Charges are atom nuclei and monopoles, dipoles are induced dipoles
        (mean of forward and conjugate) and permanent dipoles. Per-fragment
        atoms and induced dipoles come first, then all multipole points.

        Returns:
            Tuple (xyz, values), each a list of four arrays: positions of
            shape (n_k, 3) and values of shape (n_k,), (n_k, 3), (n_k, 6)
            and (n_k, 10)
        """
        self._check_live()
        xyz = [[], [], [], []]
        values = [[], [], [], []]

        for frag in self.frags:
            xyz[0].append(frag.atom_xyz)
            values[0].append(frag.atom_znuc)
            if frag.n_polarizable_pts:
                xyz[1].append(frag.polarizable_xyz)
                values[1].append(0.5 * (frag.induced_dipoles + frag.induced_dipoles_conj))

        for frag in self.frags:
            if not frag.n_multipole_pts:
                continue
            for order in range(4):
                xyz[order].append(frag.multipole_xyz)
            values[0].append(frag.monopoles)
            values[1].append(frag.dipoles)
            values[2].append(frag.quadrupoles)
            values[3].append(frag.octupoles)

        shapes = ((), (3,), (6,), (10,))
        xyz_out = [np.vstack(chunks) if chunks else np.zeros((0, 3)) for chunks in xyz]
        values_out = [np.concatenate(chunks) if chunks else np.zeros((0,) + shape)
                      for chunks, shape in zip(values, shapes)]
        return xyz_out, values_out

    def get_frag_count(self):
        self._check_live()
        return len(self.frags)

    def get_frag_name(self, frag_idx):
        self._check_live()
        return self._check_frag_index(frag_idx).name

    def get_frag_mass(self, frag_idx):
        self._check_live()
        return self._check_frag_index(frag_idx).mass

    def get_frag_inertia(self, frag_idx):
        """Principal moments of inertia of a fragment, shape (3,)."""
        self._check_live()
        return self._check_frag_index(frag_idx).inertia()

    def get_frag_atom_count(self, frag_idx):
        self._check_live()
        return self._check_frag_index(frag_idx).n_atoms

    def get_frag_atoms(self, frag_idx, size=None):
        """Lab-frame atoms of a fragment.

        Args:
            frag_idx: Fragment index
            size: Capacity of the caller's buffer, checked when given; it
                must hold at least the fragment's atoms

        Returns:
            List of Atom records
        """
        self._check_live()
        frag = self._check_frag_index(frag_idx)
        if size is not None:
            if not isinstance(size, (int, np.integer)):
                raise EfpError(Result.INVALID_ARGUMENT, f"size={size!r}")
            if size < frag.n_atoms:
                raise EfpError(Result.INVALID_ARRAY_SIZE,
                               f"fragment {frag_idx} has {frag.n_atoms} atoms, got size {size}")
        return [Atom(label, *map(float, xyz), float(mass), float(znuc))
                for label, xyz, mass, znuc in zip(frag.atom_labels, frag.atom_xyz,
                                                  frag.atom_mass, frag.atom_znuc)]

    @staticmethod
    def _deliver(result, out):
        if out is None:
            return result
        if not isinstance(out, np.ndarray):
            raise EfpError(Result.INVALID_ARGUMENT, "out must be a numpy array")
        if out.size != result.size:
            raise EfpError(Result.INVALID_ARRAY_SIZE,
                           f"expected {result.size} values, got {out.size}")
        out[...] = result.reshape(out.shape)
        return out


def shutdown(efp):
    """Tear down a context; None is accepted and ignored."""
    if efp is None:
        return
    efp.shutdown()
