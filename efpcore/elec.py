"""Electrostatics between fragment charges, and between fragments and QM nuclei."""

import logging

import numpy as np

from .backend import NUMBA_AVAILABLE, require_numba
from .options import ElecDamp, Terms
from .rigid import (
    apply_rigid_transform,
    rotate_dipoles,
    rotate_octupoles,
    rotate_quadrupoles,
)
from .utils import add_pair_switching, add_site_gradients, pair_geometry

if NUMBA_AVAILABLE:
    from .elec_numba import charge_charge_numba

logger = logging.getLogger(__name__)


def charge_charge(xyz_a, q_a, s_a, xyz_b, q_b, s_b):
    """Charge-charge energy and gradient between two sets of point charges.

    Pairs where both sites carry a positive screening exponent are damped by
    1 - exp(-sqrt(s_a s_b) r).

    Args:
        xyz_a: Positions of set A, shape (n, 3)
        q_a: Charges of set A, shape (n,)
        s_a: Screening exponents of set A, shape (n,), 0 means unscreened
        xyz_b: Positions of set B, shape (m, 3)
        q_b: Charges of set B, shape (m,)
        s_b: Screening exponents of set B, shape (m,)

    Returns:
        Tuple (energy, grad_a, grad_b, virial):
        - energy: Interaction energy
        - grad_a: dE/d(xyz_a), shape (n, 3)
        - grad_b: dE/d(xyz_b), shape (m, 3)
        - virial: sum over pairs of outer(r_b - r_a, dE/d(r_b - r_a)), shape (3, 3)
    """
    dr = xyz_b[None, :, :] - xyz_a[:, None, :]
    r = np.sqrt(np.sum(dr * dr, axis=2))
    qq = q_a[:, None] * q_b[None, :]

    damped = (s_a[:, None] > 0.0) & (s_b[None, :] > 0.0)
    s = np.where(damped, np.sqrt(np.abs(s_a[:, None] * s_b[None, :])), 0.0)
    e_s = np.exp(-s * r)
    f = np.where(damped, 1.0 - e_s, 1.0)
    fp = np.where(damped, s * e_s, 0.0)

    energy = float(np.sum(qq * f / r))
    dedr = qq * (fp / r - f / r**2)
    G = (dedr / r)[:, :, None] * dr

    grad_a = -G.sum(axis=1)
    grad_b = G.sum(axis=0)
    virial = np.einsum("abi,abj->ij", dr, G)
    return energy, grad_a, grad_b, virial


def _kernel():
    if NUMBA_AVAILABLE:
        return charge_charge_numba
    require_numba("electrostatic kernels")
    return charge_charge


def update_elec(frag):
    """Move multipole points and rotate their moments into the lab frame."""
    if frag.multipole_xyz is None:
        return
    lib = frag.lib
    R = frag.rotmat
    frag.multipole_xyz = apply_rigid_transform(frag.x, R, lib.multipole_xyz)
    frag.dipoles = rotate_dipoles(R, lib.dipoles)
    frag.quadrupoles = rotate_quadrupoles(R, lib.quadrupoles)
    frag.octupoles = rotate_octupoles(R, lib.octupoles)


def screened_charge_sites(frag, screen):
    """Charge sites of a fragment with their screening exponents.

    Atom nuclei are never screened; multipole monopoles carry the fragment's
    screening parameters when screen is True.

    Returns:
        Tuple (xyz, charges, exponents)
    """
    xyz, q = frag.charge_sites()
    s = np.zeros(q.shape[0])
    if screen and frag.screen_params is not None:
        s[frag.n_atoms:] = frag.screen_params
    return xyz, q, s


def _frag_frag_elec(efp, i, j, pair, screen):
    fr_i = efp.frags[i]
    fr_j = efp.frags[j]
    xyz_i, q_i, s_i = screened_charge_sites(fr_i, screen)
    xyz_j, q_j, s_j = screened_charge_sites(fr_j, screen)

    energy, grad_i, grad_j, virial = _kernel()(
        xyz_i, q_i, s_i, xyz_j + pair.shift, q_j, s_j)

    if efp.do_gradient:
        add_site_gradients(fr_i, xyz_i, pair.swf * grad_i)
        add_site_gradients(fr_j, xyz_j, pair.swf * grad_j)
        efp.stress += pair.swf * virial
        add_pair_switching(efp, i, j, pair, energy)

    return pair.swf * energy


def compute_elec(efp):
    """Fragment-fragment electrostatic energy into efp.energy.electrostatic."""
    if not (efp.opts.terms & Terms.ELEC):
        return

    screen = efp.opts.elec_damp == ElecDamp.SCREEN
    energy = 0.0
    n_frag = len(efp.frags)

    for i in range(n_frag):
        for j in range(i + 1, n_frag):
            pair = pair_geometry(efp, i, j)
            if pair is None:
                continue
            energy += _frag_frag_elec(efp, i, j, pair, screen)

    efp.energy.electrostatic = energy


def compute_ai_elec(efp):
    """Energy of QM nuclei in the field of fragment charges into efp.energy.ai_electrostatic."""
    if not (efp.opts.terms & Terms.AI_ELEC):
        return
    if efp.n_qm_atoms == 0:
        return

    kernel = _kernel()
    zeros_qm = np.zeros(efp.n_qm_atoms)
    energy = 0.0

    for frag in efp.frags:
        xyz, q = frag.charge_sites()
        e, grad_frag, grad_qm, _ = kernel(
            xyz, q, np.zeros(q.shape[0]), efp.qm_xyz, efp.qm_znuc, zeros_qm)
        energy += e

        if efp.do_gradient:
            add_site_gradients(frag, xyz, grad_frag)
            efp.qm_grad += grad_qm

    efp.energy.ai_electrostatic = energy
