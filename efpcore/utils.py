"""Periodic images, switching function and gradient bookkeeping shared by the terms."""

from dataclasses import dataclass

import numpy as np

# Switching starts at this fraction of the cutoff radius
SWF_ONSET = 0.8


def minimum_image(dr, box):
    """Apply minimum image convention for an orthorhombic box.

    Args:
        dr: Displacement vector(s), shape (3,) or (N, 3)
        box: Box lengths, shape (3,)

    Returns:
        Minimum image displacement vector(s)
    """
    return dr - box * np.round(dr / box)


def switching_function(r, cutoff):
    """Smooth truncation of a pair interaction.

    1 below SWF_ONSET * cutoff, 0 beyond cutoff, quintic smoothstep between.

    Args:
        r: Distance between fragment origins
        cutoff: Cutoff radius

    Returns:
        Tuple (value, derivative with respect to r)
    """
    r_on = SWF_ONSET * cutoff
    if r <= r_on:
        return 1.0, 0.0
    if r >= cutoff:
        return 0.0, 0.0
    width = cutoff - r_on
    x = (r - r_on) / width
    value = 1.0 - x**3 * (10.0 - 15.0 * x + 6.0 * x**2)
    deriv = -30.0 * x**2 * (1.0 - x)**2 / width
    return value, deriv


@dataclass
class PairGeometry:
    """Relative placement of fragment j with respect to fragment i.

    Attributes:
        shift: Periodic image shift added to every lab position of fragment j
        dr: Separation of fragment origins x_j + shift - x_i
        swf: Switching function value
        dswf: Derivative of swf with respect to dr, shape (3,)
    """
    shift: np.ndarray
    dr: np.ndarray
    swf: float
    dswf: np.ndarray


def pair_geometry(efp, i, j):
    """Periodic image and switching function for the fragment pair (i, j).

    Args:
        efp: Efp context
        i, j: Fragment indices

    Returns:
        PairGeometry, or None when the pair lies beyond the cutoff
    """
    opts = efp.opts
    dr = efp.frags[j].x - efp.frags[i].x
    shift = np.zeros(3)

    if opts.enable_pbc and efp.box is not None:
        image = minimum_image(dr, efp.box)
        shift = image - dr
        dr = image

    if not opts.enable_cutoff:
        return PairGeometry(shift=shift, dr=dr, swf=1.0, dswf=np.zeros(3))

    r = np.sqrt(np.dot(dr, dr))
    if r >= opts.swf_cutoff:
        return None

    swf, deriv = switching_function(r, opts.swf_cutoff)
    dswf = deriv * dr / r if r > 0.0 else np.zeros(3)
    return PairGeometry(shift=shift, dr=dr, swf=swf, dswf=dswf)


def add_site_gradients(frag, xyz, grad):
    """Accumulate site gradients into a fragment's force and torque.

    Args:
        frag: Fragment instance
        xyz: Lab positions of the sites (unshifted), shape (n, 3)
        grad: dE/d(site position), shape (n, 3)
    """
    if grad.shape[0] == 0:
        return
    frag.force += grad.sum(axis=0)
    frag.torque += np.cross(xyz - frag.x, grad).sum(axis=0)


def add_pair_switching(efp, i, j, pair, energy):
    """Add the gradient of the switching function times the unswitched pair energy."""
    g = energy * pair.dswf
    efp.frags[i].force -= g
    efp.frags[j].force += g
    efp.stress += np.outer(pair.dr, g)


def add_virial(efp, dr, grad):
    """Accumulate site-pair virial contributions.

    Args:
        efp: Efp context
        dr: Site separations r_b - r_a, shape (..., 3)
        grad: dE/d(r_b - r_a), shape (..., 3)
    """
    efp.stress += np.einsum("...i,...j->ij", dr, grad)
