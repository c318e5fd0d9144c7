"""Dispersion between dynamic polarizable points."""

import logging

import numpy as np

from .options import DispDamp, Terms
from .rigid import apply_rigid_transform, rotate_tensors
from .utils import add_pair_switching, add_site_gradients, pair_geometry
from .xr import lmo_overlap

logger = logging.getLogger(__name__)

# Tang-Toennies damping exponent, bohr^-1
DISP_TT_EXPONENT = 1.5

# Overlaps below this magnitude leave the pair undamped
DISP_OVERLAP_THRESHOLD = 1.0e-5

# Scale of the imaginary-frequency mapping omega = OMEGA0 (1 + t) / (1 - t)
OMEGA0 = 0.3


def _casimir_polder_quadrature(n_points=12):
    t, w = np.polynomial.legendre.leggauss(n_points)
    freq = OMEGA0 * (1.0 + t) / (1.0 - t)
    weights = (3.0 / np.pi) * w * 2.0 * OMEGA0 / (1.0 - t)**2
    return freq, weights


# Imaginary frequencies at which dynamic polarizabilities are tabulated,
# and the Casimir-Polder weights C6 = sum_k w_k alpha_a(k) alpha_b(k)
FREQUENCIES, QUADRATURE_WEIGHTS = _casimir_polder_quadrature()


def update_disp(frag):
    """Move dynamic polarizable points and rotate their tensors into the lab frame."""
    if frag.dynamic_polarizable_xyz is None:
        return
    lib = frag.lib
    frag.dynamic_polarizable_xyz = apply_rigid_transform(
        frag.x, frag.rotmat, lib.dynamic_polarizable_xyz)
    frag.dynamic_polarizable_tensors = rotate_tensors(
        frag.rotmat, lib.dynamic_polarizable_tensors)


def isotropic_polarizabilities(tensors):
    """Trace/3 of each frequency tensor, shape (d, 12)."""
    return np.trace(tensors, axis1=-2, axis2=-1) / 3.0


def c6_coefficients(tensors_a, tensors_b):
    """C6 coefficients between two sets of dynamic polarizable points.

    Args:
        tensors_a: shape (n, 12, 3, 3)
        tensors_b: shape (m, 12, 3, 3)

    Returns:
        C6 matrix, shape (n, m)
    """
    alpha_a = isotropic_polarizabilities(tensors_a)
    alpha_b = isotropic_polarizabilities(tensors_b)
    return (alpha_a * QUADRATURE_WEIGHTS) @ alpha_b.T


def tt_damping(r):
    """Tang-Toennies damping of order 6 and its derivative with respect to r."""
    br = DISP_TT_EXPONENT * r
    total = np.zeros_like(br)
    term = np.ones_like(br)
    for k in range(7):
        if k > 0:
            term = term * br / k
        total += term
    e_br = np.exp(-br)
    f = 1.0 - e_br * total
    fp = DISP_TT_EXPONENT * e_br * br**6 / 720.0
    return f, fp


def overlap_damping(S):
    """Overlap-based damping 1 - S^2 (1 - 2 ln|S| + 2 ln^2|S|) and its derivative in S."""
    mask = np.abs(S) > DISP_OVERLAP_THRESHOLD
    ln_s = np.log(np.where(mask, np.abs(S), 1.0))
    f = np.where(mask, 1.0 - S * S * (1.0 - 2.0 * ln_s + 2.0 * ln_s * ln_s), 1.0)
    dfds = np.where(mask, -4.0 * S * ln_s * ln_s, 0.0)
    return f, dfds


def _frag_frag_disp(efp, i, j, pair):
    fr_i = efp.frags[i]
    fr_j = efp.frags[j]
    damp = efp.opts.disp_damp

    p_i = fr_i.dynamic_polarizable_xyz
    p_j = fr_j.dynamic_polarizable_xyz
    dr = (p_j + pair.shift)[None, :, :] - p_i[:, None, :]
    r = np.sqrt(np.sum(dr * dr, axis=2))
    c6 = c6_coefficients(fr_i.dynamic_polarizable_tensors,
                         fr_j.dynamic_polarizable_tensors)
    inv_r6 = 1.0 / r**6

    dfds = None
    if damp == DispDamp.TT:
        f, fp = tt_damping(r)
    elif damp == DispDamp.OVERLAP:
        f, dfds = overlap_damping(fr_i.overlap_int[j])
        fp = np.zeros_like(r)
    else:
        f = np.ones_like(r)
        fp = np.zeros_like(r)

    energy = float(np.sum(-c6 * f * inv_r6))

    if efp.do_gradient:
        dedr = -c6 * (fp * inv_r6 - 6.0 * f * inv_r6 / r)
        G = (dedr / r)[:, :, None] * dr
        add_site_gradients(fr_i, p_i, -pair.swf * G.sum(axis=1))
        add_site_gradients(fr_j, p_j, pair.swf * G.sum(axis=0))
        efp.stress += pair.swf * np.einsum("abi,abj->ij", dr, G)

        if dfds is not None:
            # damping depends on the LMO centroids through the overlap
            dc, _, _ = lmo_overlap(fr_i.lmo_centroids, fr_j.lmo_centroids + pair.shift)
            GS = (-c6 * inv_r6 * dfds)[:, :, None] * fr_i.overlap_int_deriv[j]
            add_site_gradients(fr_i, fr_i.lmo_centroids, -pair.swf * GS.sum(axis=1))
            add_site_gradients(fr_j, fr_j.lmo_centroids, pair.swf * GS.sum(axis=0))
            efp.stress += pair.swf * np.einsum("abi,abj->ij", dc, GS)

        add_pair_switching(efp, i, j, pair, energy)

    return pair.swf * energy


def compute_disp(efp):
    """Fragment-fragment dispersion energy into efp.energy.dispersion."""
    if not (efp.opts.terms & Terms.DISP):
        return

    energy = 0.0
    n_frag = len(efp.frags)

    for i in range(n_frag):
        for j in range(i + 1, n_frag):
            pair = pair_geometry(efp, i, j)
            if pair is None:
                continue
            energy += _frag_frag_disp(efp, i, j, pair)

    efp.energy.dispersion = energy
