"""Polarization: self-consistent induced dipoles at polarizable points.

Induced dipoles respond to the static field of the charges of all other
fragments (and, under ab initio coupling, of the QM nuclei and the QM
electron density) plus the field of all other induced dipoles:

    mu_i = A_i (E0_i + sum_j T_ij mu_j)

Conjugate dipoles use A_i^T. The energy is -1/2 sum_i mu_i . E0_i. The
analytic gradient holds at convergence and includes the orientational
torque from rotating anisotropic polarizability tensors. The derivative
of the electron density field supplied by the callback is not included.
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from .options import PolDamp, Terms
from .results import EfpError, Result
from .rigid import apply_rigid_transform, rotate_tensors
from .utils import add_pair_switching, add_site_gradients, pair_geometry

logger = logging.getLogger(__name__)

# RMS change of induced dipoles at convergence
POL_SCF_TOL = 1.0e-10

POL_SCF_MAX_ITER = 80

# Exponent of the Tang-Toennies-like damping of the static field, bohr^-2
POL_DAMP_TT_VALUE = 0.6


def update_pol(frag):
    """Move polarizable points and rotate their tensors into the lab frame."""
    if frag.polarizable_xyz is None:
        return
    lib = frag.lib
    frag.polarizable_xyz = apply_rigid_transform(frag.x, frag.rotmat, lib.polarizable_xyz)
    frag.polarizable_tensors = rotate_tensors(frag.rotmat, lib.polarizable_tensors)


def pol_tt_damping(r):
    """Damping 1 - exp(-b r^2)(1 + b r^2) and its derivative with respect to r."""
    u = POL_DAMP_TT_VALUE * r * r
    e_u = np.exp(-u)
    f = 1.0 - e_u * (1.0 + u)
    fp = 2.0 * POL_DAMP_TT_VALUE * r * u * e_u
    return f, fp


def _damping(r, damp):
    if damp:
        return pol_tt_damping(r)
    return np.ones_like(r), np.zeros_like(r)


def charge_field(p, q_xyz, q, damp=False):
    """Electric field of point charges at points p.

    Args:
        p: Field points, shape (n, 3)
        q_xyz: Charge positions, shape (m, 3)
        q: Charges, shape (m,)
        damp: Apply pol_tt_damping

    Returns:
        Field, shape (n, 3)
    """
    dr = p[:, None, :] - q_xyz[None, :, :]
    r = np.sqrt(np.sum(dr * dr, axis=2))
    f, _ = _damping(r, damp)
    h = q[None, :] * f / r**3
    return np.einsum("nm,nmi->ni", h, dr)


def charge_dipole(p, mu, q_xyz, q, damp=False):
    """Energy -mu . E of fixed dipoles in the field of point charges, and its gradient.

    Returns:
        Tuple (energy, grad_p, grad_q, virial)
    """
    dr = p[:, None, :] - q_xyz[None, :, :]
    r = np.sqrt(np.sum(dr * dr, axis=2))
    f, fp = _damping(r, damp)
    h = f / r**3
    hp = fp / r**3 - 3.0 * f / r**4
    mu_r = np.einsum("ni,nmi->nm", mu, dr)

    energy = float(-np.sum(q[None, :] * h * mu_r))
    g = -q[None, :, None] * (h[:, :, None] * mu[:, None, :] +
                             (mu_r * hp / r)[:, :, None] * dr)
    return energy, g.sum(axis=1), -g.sum(axis=0), np.einsum("nmi,nmj->ij", dr, g)


def dipole_tensor(dr):
    """Dipole field tensors T = (3 r r^T / r^2 - I) / r^3, shape (..., 3, 3)."""
    r2 = np.sum(dr * dr, axis=-1)
    r = np.sqrt(r2)
    rr = dr[..., :, None] * dr[..., None, :]
    return 3.0 * rr / (r**5)[..., None, None] - np.eye(3) / (r**3)[..., None, None]


def dipole_dipole(p_a, mu_a, p_b, mu_b):
    """Interaction energy of two sets of fixed dipoles, and its gradient.

    Returns:
        Tuple (energy, grad_a, grad_b, virial)
    """
    dr = p_a[:, None, :] - p_b[None, :, :]
    r = np.sqrt(np.sum(dr * dr, axis=2))
    r3, r5, r7 = r**3, r**5, r**7
    ab = mu_a @ mu_b.T
    ar = np.einsum("ni,nmi->nm", mu_a, dr)
    br = np.einsum("mi,nmi->nm", mu_b, dr)

    energy = float(np.sum(ab / r3 - 3.0 * ar * br / r5))
    g = ((-3.0 * ab / r5 + 15.0 * ar * br / r7)[:, :, None] * dr -
         3.0 * (mu_a[:, None, :] * br[:, :, None] +
                mu_b[None, :, :] * ar[:, :, None]) / r5[:, :, None])
    return energy, g.sum(axis=1), -g.sum(axis=0), np.einsum("nmi,nmj->ij", dr, g)


@dataclass
class PolSites:
    """Polarizable points of all fragments, flattened.

    Attributes:
        xyz: shape (N, 3)
        tensors: shape (N, 3, 3)
        slices: (fragment index, slice into the flat arrays) per fragment
    """
    xyz: np.ndarray
    tensors: np.ndarray
    slices: List[Tuple[int, slice]]

    @property
    def n(self):
        return self.xyz.shape[0]


def gather_sites(efp):
    xyz = []
    tensors = []
    slices = []
    start = 0
    for k, frag in enumerate(efp.frags):
        if frag.polarizable_xyz is None:
            continue
        n = frag.n_polarizable_pts
        xyz.append(frag.polarizable_xyz)
        tensors.append(frag.polarizable_tensors)
        slices.append((k, slice(start, start + n)))
        start += n
    if not xyz:
        return PolSites(np.zeros((0, 3)), np.zeros((0, 3, 3)), [])
    return PolSites(np.vstack(xyz), np.concatenate(tensors), slices)


def _pair_table(efp):
    n_frag = len(efp.frags)
    return {(i, j): pair_geometry(efp, i, j)
            for i in range(n_frag) for j in range(i + 1, n_frag)}


def _lookup(pairs, a, b):
    """Pair geometry and the image shift of fragment b as seen from fragment a."""
    if a < b:
        pair = pairs[(a, b)]
        return pair, None if pair is None else pair.shift
    pair = pairs[(b, a)]
    return pair, None if pair is None else -pair.shift


def _electron_density_field(efp, xyz):
    callback = efp.callbacks.get_electron_density_field if efp.callbacks else None
    if callback is None:
        raise EfpError(Result.CALLBACK_NOT_SET, "get_electron_density_field")
    try:
        field = np.asarray(callback(xyz.copy()), dtype=np.float64)
    except Exception as exc:
        raise EfpError(Result.CALLBACK_FAILED, str(exc)) from exc
    if field.shape != xyz.shape:
        raise EfpError(Result.CALLBACK_FAILED,
                       f"field shape {field.shape}, expected {xyz.shape}")
    return field


def static_field(efp, sites, pairs):
    """Field of fragment charges, QM nuclei and QM electrons at every polarizable point."""
    damp = efp.opts.pol_damp == PolDamp.TT
    E0 = np.zeros((sites.n, 3))

    for a, sl in sites.slices:
        p = sites.xyz[sl]
        for b, frag in enumerate(efp.frags):
            if b == a:
                continue
            pair, shift = _lookup(pairs, a, b)
            if pair is None:
                continue
            q_xyz, q = frag.charge_sites()
            E0[sl] += pair.swf * charge_field(p, q_xyz + shift, q, damp)

    if efp.opts.terms & Terms.AI_POL:
        if efp.n_qm_atoms > 0:
            E0 += charge_field(sites.xyz, efp.qm_xyz, efp.qm_znuc)
        if sites.n > 0:
            E0 += _electron_density_field(efp, sites.xyz)

    return E0


def dipole_matrix(efp, sites, pairs):
    """Dipole-dipole field matrix coupling points of different fragments, shape (3N, 3N)."""
    T = np.zeros((3 * sites.n, 3 * sites.n))

    for ia, (a, sl_a) in enumerate(sites.slices):
        for b, sl_b in sites.slices[ia + 1:]:
            pair = pairs[(a, b)]
            if pair is None:
                continue
            dr = sites.xyz[sl_a][:, None, :] - (sites.xyz[sl_b] + pair.shift)[None, :, :]
            t_ab = pair.swf * dipole_tensor(dr)
            n, m = t_ab.shape[:2]
            block = t_ab.transpose(0, 2, 1, 3).reshape(3 * n, 3 * m)
            rows = slice(3 * sl_a.start, 3 * sl_a.stop)
            cols = slice(3 * sl_b.start, 3 * sl_b.stop)
            T[rows, cols] = block
            T[cols, rows] = block.T

    return T


def solve_induced_dipoles(sites, E0, T):
    """Jacobi iterations for forward and conjugate induced dipoles.

    Returns:
        Tuple (mu, mu_conj, field, field_conj); field = E0 + T mu is the
        total field at each point

    Raises:
        EfpError: POL_NOT_CONVERGED
    """
    A = sites.tensors
    At = A.transpose(0, 2, 1)
    mu = np.einsum("nij,nj->ni", A, E0)
    mu_conj = np.einsum("nij,nj->ni", At, E0)

    for iteration in range(1, POL_SCF_MAX_ITER + 1):
        field = E0 + (T @ mu.ravel()).reshape(-1, 3)
        field_conj = E0 + (T @ mu_conj.ravel()).reshape(-1, 3)
        new_mu = np.einsum("nij,nj->ni", A, field)
        new_mu_conj = np.einsum("nij,nj->ni", At, field_conj)

        change = np.sqrt(0.5 * (np.mean((new_mu - mu)**2) +
                                np.mean((new_mu_conj - mu_conj)**2)))
        mu, mu_conj = new_mu, new_mu_conj

        if change < POL_SCF_TOL:
            logger.debug("polarization SCF converged in %d iterations", iteration)
            break
    else:
        logger.warning("polarization SCF not converged after %d iterations (change %.3e)",
                       POL_SCF_MAX_ITER, change)
        raise EfpError(Result.POL_NOT_CONVERGED)

    field = E0 + (T @ mu.ravel()).reshape(-1, 3)
    field_conj = E0 + (T @ mu_conj.ravel()).reshape(-1, 3)
    return mu, mu_conj, field, field_conj


def _store_dipoles(efp, sites, mu, mu_conj):
    for k, sl in sites.slices:
        efp.frags[k].induced_dipoles = mu[sl].copy()
        efp.frags[k].induced_dipoles_conj = mu_conj[sl].copy()


def _run_scf(efp):
    sites = gather_sites(efp)
    pairs = _pair_table(efp)
    if sites.n == 0:
        return sites, pairs, None, None, None, None, None, 0.0

    E0 = static_field(efp, sites, pairs)
    T = dipole_matrix(efp, sites, pairs)
    mu, mu_conj, field, field_conj = solve_induced_dipoles(sites, E0, T)
    _store_dipoles(efp, sites, mu, mu_conj)

    energy = -0.5 * float(np.sum(0.5 * (mu + mu_conj) * E0))
    return sites, pairs, E0, mu, mu_conj, field, field_conj, energy


def compute_pol_energy(efp):
    """Polarization energy for the current geometry, updating induced dipoles.

    Returns:
        Polarization energy
    """
    if not (efp.opts.terms & Terms.POL):
        return 0.0
    return _run_scf(efp)[-1]


def _pol_gradient(efp, sites, pairs, mu, mu_conj, field, field_conj):
    damp = efp.opts.pol_damp == PolDamp.TT
    mu_avg = 0.5 * (mu + mu_conj)
    pair_energy = {key: 0.0 for key, pair in pairs.items() if pair is not None}

    # static field, with induced dipoles held fixed
    for a, sl in sites.slices:
        fr_a = efp.frags[a]
        p = sites.xyz[sl]
        for b, fr_b in enumerate(efp.frags):
            if b == a:
                continue
            pair, shift = _lookup(pairs, a, b)
            if pair is None:
                continue
            q_xyz, q = fr_b.charge_sites()
            e, grad_p, grad_q, virial = charge_dipole(p, mu_avg[sl], q_xyz + shift, q, damp)
            add_site_gradients(fr_a, p, pair.swf * grad_p)
            add_site_gradients(fr_b, q_xyz, pair.swf * grad_q)
            efp.stress += pair.swf * virial
            pair_energy[(min(a, b), max(a, b))] += e

        if (efp.opts.terms & Terms.AI_POL) and efp.n_qm_atoms > 0:
            _, grad_p, grad_q, _ = charge_dipole(p, mu_avg[sl], efp.qm_xyz, efp.qm_znuc)
            add_site_gradients(fr_a, p, grad_p)
            efp.qm_grad += grad_q

    # induced dipole - induced dipole coupling
    for ia, (a, sl_a) in enumerate(sites.slices):
        for b, sl_b in sites.slices[ia + 1:]:
            pair = pairs[(a, b)]
            if pair is None:
                continue
            p_a = sites.xyz[sl_a]
            p_b = sites.xyz[sl_b]
            e1, ga1, gb1, v1 = dipole_dipole(p_a, mu_conj[sl_a], p_b + pair.shift, mu[sl_b])
            e2, ga2, gb2, v2 = dipole_dipole(p_a, mu[sl_a], p_b + pair.shift, mu_conj[sl_b])
            add_site_gradients(efp.frags[a], p_a, 0.5 * pair.swf * (ga1 + ga2))
            add_site_gradients(efp.frags[b], p_b, 0.5 * pair.swf * (gb1 + gb2))
            efp.stress += 0.5 * pair.swf * (v1 + v2)
            pair_energy[(a, b)] += 0.5 * (e1 + e2)

    # rotation of the polarizability tensors
    for k, sl in sites.slices:
        efp.frags[k].torque += 0.5 * np.sum(
            np.cross(field[sl], mu_conj[sl]) + np.cross(field_conj[sl], mu[sl]), axis=0)

    for (i, j), energy in pair_energy.items():
        add_pair_switching(efp, i, j, pairs[(i, j)], energy)


def compute_pol(efp):
    """Polarization energy into efp.energy.polarization."""
    if not (efp.opts.terms & Terms.POL):
        return

    sites, pairs, E0, mu, mu_conj, field, field_conj, energy = _run_scf(efp)
    efp.energy.polarization = energy

    if efp.do_gradient and sites.n > 0:
        _pol_gradient(efp, sites, pairs, mu, mu_conj, field, field_conj)
