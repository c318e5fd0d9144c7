"""Model water fragment template factory."""

import numpy as np

from .disp import FREQUENCIES
from .fragment import Fragment, Shell


def _water_geometry():
    # Geometry in bohr
    bond_length = 1.8088  # O-H bond length, 0.9572 angstrom
    angle_deg = 104.52  # H-O-H angle in degrees
    half_angle = np.deg2rad(angle_deg) / 2.0

    O_pos = np.array([0.0, 0.0, 0.0])
    H1_pos = np.array([bond_length * np.sin(half_angle), 0.0, bond_length * np.cos(half_angle)])
    H2_pos = np.array([-bond_length * np.sin(half_angle), 0.0, bond_length * np.cos(half_angle)])
    return np.array([O_pos, H1_pos, H2_pos])


def make_water_template(name="water"):
    """Create a model water fragment template carrying every parameter group.

    The parameters are chosen to be physically sensible in magnitude, not
    fitted to any ab initio calculation. The template is centred on its
    centre of mass with the molecule in the x-z plane.

    Sites (atomic units):
    - Atoms: O (Z = 8), H1, H2 (Z = 1); O-H 1.8088 bohr, H-O-H 104.52 degrees
    - Multipole points: the three atoms and the two O-H bond midpoints;
      monopoles sum to -10 so the fragment is neutral
    - Screening: SCREEN2 and SCREEN exponents on every multipole point
    - Polarizable points: four LMO centroids (two O-H bonds, two lone
      pairs) with anisotropic, slightly non-symmetric tensors
    - Dynamic polarizable points: the same four centroids, tensors at the
      12 quadrature frequencies following alpha(w) = alpha(0) / (1 + (w / 0.5)^2)
    - Exchange repulsion: one LMO per centroid, S-shell basis (two shells
      on O, one on each H), packed Fock matrix and wavefunction

    Args:
        name: Fragment name

    Returns:
        Fragment template (lib is None)
    """
    atoms = _water_geometry()
    mass = np.array([15.99491, 1.00783, 1.00783])
    com = np.sum(mass[:, None] * atoms, axis=0) / np.sum(mass)
    atoms = atoms - com
    O_pos, H1_pos, H2_pos = atoms

    # Multipole points: atoms, then O-H bond midpoints
    bm1 = 0.5 * (O_pos + H1_pos)
    bm2 = 0.5 * (O_pos + H2_pos)
    multipole_xyz = np.array([O_pos, H1_pos, H2_pos, bm1, bm2])
    monopoles = np.array([-8.2, -0.6, -0.6, -0.3, -0.3])
    dipoles = np.array([
        [0.0, 0.0, -0.12],
        [0.03, 0.0, 0.02],
        [-0.03, 0.0, 0.02],
        [0.05, 0.0, 0.04],
        [-0.05, 0.0, 0.04],
    ])
    quadrupoles = np.array([
        [-4.1, -4.6, -4.3, 0.0, 0.0, 0.0],
        [-0.3, -0.4, -0.3, 0.0, 0.02, 0.0],
        [-0.3, -0.4, -0.3, 0.0, -0.02, 0.0],
        [-0.1, -0.1, -0.1, 0.0, 0.01, 0.0],
        [-0.1, -0.1, -0.1, 0.0, -0.01, 0.0],
    ])
    octupoles = np.zeros((5, 10))
    octupoles[0] = [0.0, 0.0, -0.8, 0.0, -0.2, 0.0, -0.3, 0.0, 0.0, 0.0]
    screen_params = np.array([2.2, 1.6, 1.6, 1.9, 1.9])
    ai_screen_params = np.array([10.0, 10.0, 10.0, 10.0, 10.0])

    # LMO centroids: O-H bonds at 60% towards H, lone pairs above and below the plane
    lp_back = -0.35 * (H1_pos + H2_pos - 2.0 * O_pos) / np.linalg.norm(H1_pos + H2_pos - 2.0 * O_pos)
    centroids = np.array([
        O_pos + 0.6 * (H1_pos - O_pos),
        O_pos + 0.6 * (H2_pos - O_pos),
        O_pos + lp_back + np.array([0.0, 0.55, 0.0]),
        O_pos + lp_back - np.array([0.0, 0.55, 0.0]),
    ])

    # Static polarizabilities, bohr^3
    bond_tensor = np.array([
        [2.0, 0.05, 0.3],
        [0.02, 1.1, 0.0],
        [0.25, 0.0, 2.4],
    ])
    bond2_tensor = bond_tensor * np.array([[1, -1, -1], [-1, 1, 1], [-1, 1, 1]])
    lp_tensor = np.array([
        [1.3, 0.0, 0.0],
        [0.0, 1.8, 0.1],
        [0.0, 0.08, 1.2],
    ])
    lp2_tensor = lp_tensor * np.array([[1, 1, 1], [1, 1, -1], [1, -1, 1]])
    pol_tensors = np.array([bond_tensor, bond2_tensor, lp_tensor, lp2_tensor])

    # Dynamic polarizabilities: symmetric part of the static tensor with Lorentzian decay
    static = 0.5 * (pol_tensors + pol_tensors.transpose(0, 2, 1))
    decay = 1.0 / (1.0 + (FREQUENCIES / 0.5)**2)
    dyn_tensors = decay[None, :, None, None] * static[:, None, :, :]

    # Exchange repulsion basis: (exponent, coefficient) rows per shell
    shells = [
        Shell("S", O_pos, [[130.7093, 0.1543], [23.8089, 0.5353], [6.4436, 0.4446]]),
        Shell("S", O_pos, [[5.0332, -0.1000], [1.1696, 0.3995], [0.3804, 0.7001]]),
        Shell("S", H1_pos, [[3.4253, 0.1543], [0.6239, 0.5353], [0.1689, 0.4446]]),
        Shell("S", H2_pos, [[3.4253, 0.1543], [0.6239, 0.5353], [0.1689, 0.4446]]),
    ]
    wf = np.array([
        [0.05, 0.45, 0.55, 0.02],
        [0.05, 0.45, 0.02, 0.55],
        [0.10, 0.85, -0.15, -0.15],
        [0.10, 0.85, -0.15, -0.15],
    ])

    # Packed lower triangle: F11, F21, F22, F31, F32, F33, ...
    fock = np.array([
        -1.20,
        -0.05, -1.20,
        -0.10, -0.10, -0.95,
        -0.10, -0.10, -0.02, -0.95,
    ])

    return Fragment(
        name=name,
        atom_labels=["O1", "H2", "H3"],
        atom_xyz=atoms,
        atom_znuc=np.array([8.0, 1.0, 1.0]),
        atom_mass=mass,
        multipole_xyz=multipole_xyz,
        monopoles=monopoles,
        dipoles=dipoles,
        quadrupoles=quadrupoles,
        octupoles=octupoles,
        screen_params=screen_params,
        ai_screen_params=ai_screen_params,
        polarizable_xyz=centroids.copy(),
        polarizable_tensors=pol_tensors,
        dynamic_polarizable_xyz=centroids.copy(),
        dynamic_polarizable_tensors=dyn_tensors,
        lmo_centroids=centroids.copy(),
        xr_shells=shells,
        xr_fock_mat=fock,
        xr_wf=wf,
    )
