"""Fragment templates and fragment instances."""

import copy
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .disp import update_disp
from .elec import update_elec
from .pol import update_pol
from .results import EfpError, Result
from .rigid import apply_rigid_transform
from .xr import update_xr

# Number of imaginary frequencies tabulated for dynamic polarizabilities
N_FREQUENCIES = 12


@dataclass
class Shell:
    """Exchange-repulsion basis shell.

    Attributes:
        type: Shell letter: S, L, P, D or F
        xyz: Shell centre, shape (3,)
        coef: Exponents and contraction coefficients, shape (n, 3) for
            L shells (exponent, s coefficient, p coefficient) and (n, 2)
            otherwise
    """
    type: str
    xyz: np.ndarray
    coef: np.ndarray

    def __post_init__(self):
        self.type = str(self.type).upper()
        self.xyz = np.asarray(self.xyz, dtype=np.float64)
        self.coef = np.asarray(self.coef, dtype=np.float64)
        if self.type not in ("S", "L", "P", "D", "F"):
            raise ValueError(f"unknown shell type {self.type!r}")
        ncol = 3 if self.type == "L" else 2
        if self.coef.ndim != 2 or self.coef.shape[1] != ncol:
            raise ValueError(f"{self.type} shell coefficients must have shape (n, {ncol}), "
                             f"got {self.coef.shape}")

    @property
    def n_basis(self):
        """Number of cartesian basis functions the shell contributes."""
        return {"S": 1, "L": 4, "P": 3, "D": 6, "F": 10}[self.type]


def _optional(arr, shape_tail, name):
    if arr is None:
        return None
    arr = np.asarray(arr, dtype=np.float64)
    if arr.ndim != 1 + len(shape_tail) or arr.shape[1:] != shape_tail:
        raise ValueError(f"{name} must have shape (n,) + {shape_tail}, got {arr.shape}")
    return arr


@dataclass
class Fragment:
    """Fragment parameters, pose and gradient accumulators.

    A template is a Fragment with lib=None loaded once into a library and
    never mutated. An instance is produced by clone(): it owns independent
    copies of every per-point array, and its lab-frame coordinates are
    recomputed from the template by update_fragment() on every pose change.

    Optional parameter groups are None when absent from the potential data.

    Attributes:
        name: Species name
        atom_labels: Atom labels, length n_atoms
        atom_xyz: Atom positions, shape (n_atoms, 3)
        atom_znuc: Nuclear charges, shape (n_atoms,)
        atom_mass: Atomic masses, shape (n_atoms,)
        multipole_xyz: Multipole expansion points, shape (m, 3)
        monopoles: shape (m,)
        dipoles: shape (m, 3)
        quadrupoles: Packed xx, yy, zz, xy, xz, yz, shape (m, 6)
        octupoles: Packed xxx, yyy, zzz, xxy, xxz, xyy, yyz, xzz, yzz, xyz, shape (m, 10)
        screen_params: Electrostatic screening exponents, shape (m,)
        ai_screen_params: Ab initio screening exponents, shape (m,)
        polarizable_xyz: Polarizable points, shape (p, 3)
        polarizable_tensors: Static polarizability tensors, shape (p, 3, 3)
        induced_dipoles: shape (p, 3)
        induced_dipoles_conj: Conjugate induced dipoles, shape (p, 3)
        dynamic_polarizable_xyz: shape (d, 3)
        dynamic_polarizable_tensors: shape (d, 12, 3, 3)
        lmo_centroids: Localized orbital centroids, shape (n_lmo, 3)
        xr_shells: Basis shells for exchange repulsion
        xr_fock_mat: Packed lower-triangular Fock matrix, shape (n_lmo*(n_lmo+1)/2,)
        xr_wf: LMO coefficients, shape (n_lmo, xr_wf_size)
        xr_wf_deriv: Wavefunction derivatives, shape (3, n_lmo, xr_wf_size)
        overlap_int: LMO overlaps with each later fragment j, {j: (n_lmo, n_lmo_j)}
        overlap_int_deriv: Overlap derivatives, {j: (n_lmo, n_lmo_j, 3)}
        x: Translation, shape (3,)
        rotmat: Rotation matrix, shape (3, 3)
        force: Accumulated gradient with respect to x, shape (3,)
        torque: Accumulated rotational gradient about x, shape (3,)
        lib: Template this instance was cloned from
    """
    name: str
    atom_labels: List[str]
    atom_xyz: np.ndarray
    atom_znuc: np.ndarray
    atom_mass: np.ndarray
    multipole_xyz: Optional[np.ndarray] = None
    monopoles: Optional[np.ndarray] = None
    dipoles: Optional[np.ndarray] = None
    quadrupoles: Optional[np.ndarray] = None
    octupoles: Optional[np.ndarray] = None
    screen_params: Optional[np.ndarray] = None
    ai_screen_params: Optional[np.ndarray] = None
    polarizable_xyz: Optional[np.ndarray] = None
    polarizable_tensors: Optional[np.ndarray] = None
    induced_dipoles: Optional[np.ndarray] = None
    induced_dipoles_conj: Optional[np.ndarray] = None
    dynamic_polarizable_xyz: Optional[np.ndarray] = None
    dynamic_polarizable_tensors: Optional[np.ndarray] = None
    lmo_centroids: Optional[np.ndarray] = None
    xr_shells: Optional[List[Shell]] = None
    xr_fock_mat: Optional[np.ndarray] = None
    xr_wf: Optional[np.ndarray] = None
    xr_wf_deriv: Optional[np.ndarray] = None
    overlap_int: Optional[dict] = None
    overlap_int_deriv: Optional[dict] = None
    x: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotmat: np.ndarray = field(default_factory=lambda: np.eye(3))
    force: np.ndarray = field(default_factory=lambda: np.zeros(3))
    torque: np.ndarray = field(default_factory=lambda: np.zeros(3))
    lib: Optional["Fragment"] = None

    def __post_init__(self):
        """Validate shapes and fill in dependent buffers."""
        self.atom_labels = [str(label) for label in self.atom_labels]
        self.atom_xyz = _optional(self.atom_xyz, (3,), "atom_xyz")
        n = self.atom_xyz.shape[0]
        self.atom_znuc = np.asarray(self.atom_znuc, dtype=np.float64)
        self.atom_mass = np.asarray(self.atom_mass, dtype=np.float64)
        for name, arr in [("atom_znuc", self.atom_znuc), ("atom_mass", self.atom_mass)]:
            if arr.shape != (n,):
                raise ValueError(f"{name} must have shape ({n},), got {arr.shape}")
        if len(self.atom_labels) != n:
            raise ValueError(f"atom_labels must have {n} entries")

        self.multipole_xyz = _optional(self.multipole_xyz, (3,), "multipole_xyz")
        if self.multipole_xyz is not None:
            m = self.multipole_xyz.shape[0]
            self.monopoles = self._per_point(self.monopoles, (m,), "monopoles")
            self.dipoles = self._per_point(self.dipoles, (m, 3), "dipoles")
            self.quadrupoles = self._per_point(self.quadrupoles, (m, 6), "quadrupoles")
            self.octupoles = self._per_point(self.octupoles, (m, 10), "octupoles")
            for name in ("screen_params", "ai_screen_params"):
                arr = getattr(self, name)
                if arr is not None:
                    setattr(self, name, self._per_point(arr, (m,), name))

        self.polarizable_xyz = _optional(self.polarizable_xyz, (3,), "polarizable_xyz")
        if self.polarizable_xyz is not None:
            p = self.polarizable_xyz.shape[0]
            self.polarizable_tensors = self._per_point(
                self.polarizable_tensors, (p, 3, 3), "polarizable_tensors", fill=False)
            self.induced_dipoles = self._per_point(self.induced_dipoles, (p, 3), "induced_dipoles")
            self.induced_dipoles_conj = self._per_point(
                self.induced_dipoles_conj, (p, 3), "induced_dipoles_conj")

        self.dynamic_polarizable_xyz = _optional(
            self.dynamic_polarizable_xyz, (3,), "dynamic_polarizable_xyz")
        if self.dynamic_polarizable_xyz is not None:
            d = self.dynamic_polarizable_xyz.shape[0]
            self.dynamic_polarizable_tensors = self._per_point(
                self.dynamic_polarizable_tensors, (d, N_FREQUENCIES, 3, 3),
                "dynamic_polarizable_tensors", fill=False)

        self.lmo_centroids = _optional(self.lmo_centroids, (3,), "lmo_centroids")
        if self.xr_fock_mat is not None:
            self.xr_fock_mat = np.asarray(self.xr_fock_mat, dtype=np.float64).ravel()
        if self.xr_wf is not None:
            self.xr_wf = np.atleast_2d(np.asarray(self.xr_wf, dtype=np.float64))
        if self.xr_shells is not None:
            self.xr_shells = list(self.xr_shells)

        self.x = np.asarray(self.x, dtype=np.float64)
        self.rotmat = np.asarray(self.rotmat, dtype=np.float64)

    @staticmethod
    def _per_point(arr, shape, name, fill=True):
        if arr is None:
            if not fill:
                raise ValueError(f"{name} is required")
            return np.zeros(shape)
        arr = np.asarray(arr, dtype=np.float64)
        if arr.shape != shape:
            raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
        return arr

    @property
    def n_atoms(self):
        return self.atom_xyz.shape[0]

    @property
    def n_multipole_pts(self):
        return 0 if self.multipole_xyz is None else self.multipole_xyz.shape[0]

    @property
    def n_polarizable_pts(self):
        return 0 if self.polarizable_xyz is None else self.polarizable_xyz.shape[0]

    @property
    def n_dynamic_polarizable_pts(self):
        if self.dynamic_polarizable_xyz is None:
            return 0
        return self.dynamic_polarizable_xyz.shape[0]

    @property
    def n_lmo(self):
        return 0 if self.lmo_centroids is None else self.lmo_centroids.shape[0]

    @property
    def n_xr_shells(self):
        return 0 if self.xr_shells is None else len(self.xr_shells)

    @property
    def xr_wf_size(self):
        return 0 if self.xr_wf is None else self.xr_wf.shape[1]

    @property
    def mass(self):
        return float(np.sum(self.atom_mass))

    def charge_sites(self):
        """All point charges of the fragment: atom nuclei followed by monopoles.

        Returns:
            Tuple (xyz, charges), shapes (n, 3) and (n,)
        """
        if self.multipole_xyz is None:
            return self.atom_xyz, self.atom_znuc
        return (np.vstack([self.atom_xyz, self.multipole_xyz]),
                np.concatenate([self.atom_znuc, self.monopoles]))

    def fock_diagonal(self):
        """Diagonal of the packed lower-triangular Fock matrix, shape (n_lmo,)."""
        idx = np.arange(self.n_lmo)
        return self.xr_fock_mat[idx * (idx + 1) // 2 + idx]

    def inertia(self):
        """Moments of inertia about the template x, y and z axes.

        Templates are stored with their principal axes along x, y and z, so
        these are the principal moments in axis order.

        Returns:
            (I_xx, I_yy, I_zz) about the centre of mass, shape (3,)
        """
        ref = self.lib if self.lib is not None else self
        mass = ref.atom_mass
        com = np.sum(mass[:, None] * ref.atom_xyz, axis=0) / np.sum(mass)
        r = ref.atom_xyz - com
        r2 = r * r
        return np.array([
            np.sum(mass * (r2[:, 1] + r2[:, 2])),
            np.sum(mass * (r2[:, 0] + r2[:, 2])),
            np.sum(mass * (r2[:, 0] + r2[:, 1])),
        ])

    def clone(self):
        """Return an instance owning independent copies of every buffer.

        The copy refers back to this fragment as its template.

        Raises:
            EfpError: NO_MEMORY if a buffer cannot be allocated
        """
        template = self.lib if self.lib is not None else self
        lib, self.lib = self.lib, None
        try:
            instance = copy.deepcopy(self)
        except MemoryError:
            raise EfpError(Result.NO_MEMORY, f"cloning {self.name}") from None
        finally:
            self.lib = lib
        instance.lib = template
        return instance

    def release(self):
        """Drop every owned buffer. Safe on partially built fragments."""
        for name in ("multipole_xyz", "monopoles", "dipoles", "quadrupoles",
                     "octupoles", "screen_params", "ai_screen_params",
                     "polarizable_xyz", "polarizable_tensors", "induced_dipoles",
                     "induced_dipoles_conj", "dynamic_polarizable_xyz",
                     "dynamic_polarizable_tensors", "lmo_centroids", "xr_shells",
                     "xr_fock_mat", "xr_wf", "xr_wf_deriv", "overlap_int",
                     "overlap_int_deriv", "lib"):
            setattr(self, name, None)


def update_fragment(frag):
    """Recompute every lab-frame quantity of frag from its pose.

    This is the single synchronisation point between the pose and the
    per-point data used by the interaction terms.
    """
    frag.atom_xyz = apply_rigid_transform(frag.x, frag.rotmat, frag.lib.atom_xyz)

    update_elec(frag)
    update_pol(frag)
    update_disp(frag)
    update_xr(frag)


def set_pose(frag, x, rotmat):
    """Assign a pose to an instance and refresh its lab-frame data."""
    frag.x = np.array(x, dtype=np.float64)
    frag.rotmat = np.array(rotmat, dtype=np.float64)
    update_fragment(frag)
