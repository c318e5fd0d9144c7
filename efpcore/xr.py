"""Exchange repulsion and LMO overlap integrals.

Overlaps are modelled as normalized s-type Gaussians on the LMO centroids,
S_ab = exp(-XR_OVERLAP_EXPONENT * r_ab^2). This term runs before every other
term: it fills the pairwise overlap buffers read by overlap-damped
dispersion, and computes the overlap-based charge penetration energy.
"""

import logging

import numpy as np

from .options import ElecDamp, Terms
from .rigid import apply_rigid_transform
from .utils import add_pair_switching, add_site_gradients, pair_geometry

logger = logging.getLogger(__name__)

# Gaussian exponent of the model LMO overlap, bohr^-2
XR_OVERLAP_EXPONENT = 0.25


def update_xr(frag):
    """Move LMO centroids and basis shell centres into the lab frame."""
    lib = frag.lib
    if frag.lmo_centroids is not None:
        frag.lmo_centroids = apply_rigid_transform(frag.x, frag.rotmat, lib.lmo_centroids)
    if frag.xr_shells is not None:
        for shell, ref in zip(frag.xr_shells, lib.xr_shells):
            shell.xyz = frag.x + frag.rotmat @ ref.xyz


def lmo_overlap(c_a, c_b):
    """Overlap integrals between two sets of LMOs and their derivatives.

    Args:
        c_a: Centroids of set A, shape (n, 3)
        c_b: Centroids of set B, shape (m, 3)

    Returns:
        Tuple (dr, S, dS):
        - dr: c_b - c_a, shape (n, m, 3)
        - S: Overlaps, shape (n, m)
        - dS: dS/d(c_b - c_a), shape (n, m, 3)
    """
    dr = c_b[None, :, :] - c_a[:, None, :]
    r2 = np.sum(dr * dr, axis=2)
    S = np.exp(-XR_OVERLAP_EXPONENT * r2)
    dS = (-2.0 * XR_OVERLAP_EXPONENT * S)[:, :, None] * dr
    return dr, S, dS


def _centroids(frag):
    if frag.lmo_centroids is None:
        return np.zeros((0, 3))
    return frag.lmo_centroids


def compute_xr(efp):
    """Exchange repulsion, charge penetration and overlap buffers.

    Writes efp.energy.exchange_repulsion when XR is enabled and
    efp.energy.charge_penetration under overlap electrostatic damping.
    """
    terms = efp.opts.terms
    do_xr = bool(terms & Terms.XR)
    do_cp = bool(terms & Terms.ELEC) and efp.opts.elec_damp == ElecDamp.OVERLAP
    store = any(frag.overlap_int is not None for frag in efp.frags)

    if not (do_xr or do_cp or store):
        return

    for frag in efp.frags:
        if frag.overlap_int is not None:
            for j in frag.overlap_int:
                frag.overlap_int[j].fill(0.0)
                frag.overlap_int_deriv[j].fill(0.0)
        if do_xr and frag.xr_wf_deriv is not None:
            frag.xr_wf_deriv.fill(0.0)

    xr_energy = 0.0
    cp_energy = 0.0
    n_frag = len(efp.frags)

    for i in range(n_frag):
        fr_i = efp.frags[i]
        c_i = _centroids(fr_i)

        for j in range(i + 1, n_frag):
            pair = pair_geometry(efp, i, j)
            if pair is None:
                continue

            fr_j = efp.frags[j]
            c_j = _centroids(fr_j)
            dr, S, dS = lmo_overlap(c_i, c_j + pair.shift)

            if fr_i.overlap_int is not None:
                fr_i.overlap_int[j][...] = S
                fr_i.overlap_int_deriv[j][...] = dS

            e_xr = 0.0
            e_cp = 0.0
            G = np.zeros_like(dS)

            if do_xr:
                w = -(fr_i.fock_diagonal()[:, None] + fr_j.fock_diagonal()[None, :])
                e_xr = float(np.sum(w * S))
                G += w[:, :, None] * dS

            if do_cp:
                e_cp = float(np.sum(-2.0 * S * S))
                G += (-4.0 * S)[:, :, None] * dS

            if efp.do_gradient and (do_xr or do_cp):
                add_site_gradients(fr_i, c_i, -pair.swf * G.sum(axis=1))
                add_site_gradients(fr_j, c_j, pair.swf * G.sum(axis=0))
                efp.stress += pair.swf * np.einsum("abi,abj->ij", dr, G)
                add_pair_switching(efp, i, j, pair, e_xr + e_cp)

            xr_energy += pair.swf * e_xr
            cp_energy += pair.swf * e_cp

    if do_xr:
        efp.energy.exchange_repulsion = xr_energy
    if do_cp:
        efp.energy.charge_penetration = cp_energy
