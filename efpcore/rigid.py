"""Rigid-body utilities: Euler angles, rotation matrices, point-set alignment."""

from itertools import permutations

import numpy as np

# Orthonormality tolerance for caller-supplied rotation matrices
ROTATION_MATRIX_TOL = 1.0e-8

# Packed order of quadrupole and octupole components
QUADRUPOLE_INDICES = ((0, 0), (1, 1), (2, 2), (0, 1), (0, 2), (1, 2))
OCTUPOLE_INDICES = (
    (0, 0, 0), (1, 1, 1), (2, 2, 2), (0, 0, 1), (0, 0, 2),
    (0, 1, 1), (1, 1, 2), (0, 2, 2), (1, 2, 2), (0, 1, 2),
)


def euler_to_matrix(a, b, c):
    """Build a rotation matrix from z-x-z Euler angles.

    R = Rz(a) . Rx(b) . Rz(c)

    Args:
        a, b, c: Euler angles in radians

    Returns:
        Rotation matrix, shape (3, 3)
    """
    sina, cosa = np.sin(a), np.cos(a)
    sinb, cosb = np.sin(b), np.cos(b)
    sinc, cosc = np.sin(c), np.cos(c)

    return np.array([
        [cosa * cosc - sina * cosb * sinc, -cosa * sinc - sina * cosb * cosc, sinb * sina],
        [sina * cosc + cosa * cosb * sinc, -sina * sinc + cosa * cosb * cosc, -sinb * cosa],
        [sinb * sinc, sinb * cosc, cosb],
    ])


def matrix_to_euler(R):
    """Recover z-x-z Euler angles from a rotation matrix.

    In the gimbal-lock case (b close to 0 or pi) the rotation is
    represented with c = 0.

    Args:
        R: Rotation matrix, shape (3, 3)

    Returns:
        Tuple (a, b, c) in radians
    """
    zz = min(1.0, max(-1.0, R[2, 2]))
    b = np.arccos(zz)
    sinb = np.sqrt(1.0 - zz * zz)

    if abs(sinb) < 1.0e-7:
        if zz > 0.0:
            a = np.arctan2(-R[0, 1], R[0, 0])
        else:
            a = np.arctan2(R[0, 1], R[0, 0])
        c = 0.0
    else:
        a = np.arctan2(R[0, 2], -R[1, 2])
        c = np.arctan2(R[2, 0], R[2, 1])

    return a, b, c


def check_rotation_matrix(R, tol=ROTATION_MATRIX_TOL):
    """Check that R is a proper rotation to within tol.

    Args:
        R: Candidate matrix, shape (3, 3)
        tol: Absolute tolerance on R^T R = I and det R = 1

    Returns:
        True if R is orthonormal and right-handed
    """
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3) or not np.all(np.isfinite(R)):
        return False
    if not np.allclose(R.T @ R, np.eye(3), rtol=0.0, atol=tol):
        return False
    return abs(np.linalg.det(R) - 1.0) < tol


def points_to_matrix(ref, pts):
    """Find the rotation that best maps three reference points onto three lab points.

    Kabsch alignment of the centered point sets. The result is always a
    proper rotation (det = +1).

    Args:
        ref: Template-frame points, shape (3, 3), one point per row
        pts: Lab-frame points, shape (3, 3), one point per row

    Returns:
        Rotation matrix R with R @ ref[k] - R @ ref[0] ~ pts[k] - pts[0]
    """
    A = ref - ref.mean(axis=0)
    B = pts - pts.mean(axis=0)

    U, _, Vt = np.linalg.svd(A.T @ B)
    d = np.sign(np.linalg.det(Vt.T @ U.T))
    if d == 0.0:
        d = 1.0
    D = np.diag([1.0, 1.0, d])

    return Vt.T @ D @ U.T


def apply_rigid_transform(x, R, s_body):
    """Map template-frame coordinates to the lab frame.

    r_a = x + R s_a

    Args:
        x: Translation, shape (3,)
        R: Rotation matrix, shape (3, 3)
        s_body: Template-frame coordinates, shape (n, 3)

    Returns:
        Lab-frame coordinates, shape (n, 3)
    """
    return x + s_body @ R.T


def rotate_dipoles(R, dipoles):
    """Rotate a stack of vectors, shape (n, 3)."""
    return dipoles @ R.T


def rotate_tensors(R, tensors):
    """Rotate a stack of rank-2 tensors: R A R^T for each A.

    Args:
        R: Rotation matrix, shape (3, 3)
        tensors: Tensors, shape (..., 3, 3)

    Returns:
        Rotated tensors, same shape
    """
    return np.einsum("ia,...ab,jb->...ij", R, tensors, R)


def _unpack(packed, indices, rank):
    full = np.zeros((packed.shape[0],) + (3,) * rank)
    for k, idx in enumerate(indices):
        for perm in set(permutations(idx)):
            full[(slice(None),) + perm] = packed[:, k]
    return full


def _pack(full, indices):
    return np.stack([full[(slice(None),) + idx] for idx in indices], axis=1)


def rotate_quadrupoles(R, quadrupoles):
    """Rotate packed quadrupoles (xx, yy, zz, xy, xz, yz), shape (n, 6)."""
    full = _unpack(quadrupoles, QUADRUPOLE_INDICES, 2)
    rotated = np.einsum("ia,jb,nab->nij", R, R, full)
    return _pack(rotated, QUADRUPOLE_INDICES)


def rotate_octupoles(R, octupoles):
    """Rotate packed octupoles (xxx, yyy, zzz, xxy, xxz, xyy, yyz, xzz, yzz, xyz), shape (n, 10)."""
    full = _unpack(octupoles, OCTUPOLE_INDICES, 3)
    rotated = np.einsum("ia,jb,kc,nabc->nijk", R, R, R, full)
    return _pack(rotated, OCTUPOLE_INDICES)


def torque_to_deriv(xyzabc, grad):
    """Convert fragment (force, torque) records to Euler-angle derivatives.

    The torque about the fragment translation point is converted to
    dE/da, dE/db, dE/dc for the z-x-z convention used by euler_to_matrix.

    Args:
        xyzabc: Fragment poses, shape (n, 6)
        grad: Gradient records (fx, fy, fz, tx, ty, tz), shape (n, 6)

    Returns:
        Derivatives (dE/dx, dE/dy, dE/dz, dE/da, dE/db, dE/dc), shape (n, 6)
    """
    xyzabc = np.asarray(xyzabc, dtype=np.float64).reshape(-1, 6)
    grad = np.asarray(grad, dtype=np.float64).reshape(-1, 6)
    out = grad.copy()

    a = xyzabc[:, 3]
    b = xyzabc[:, 4]
    tx, ty, tz = grad[:, 3], grad[:, 4], grad[:, 5]
    sina, cosa = np.sin(a), np.cos(a)
    sinb, cosb = np.sin(b), np.cos(b)

    out[:, 3] = tz
    out[:, 4] = cosa * tx + sina * ty
    out[:, 5] = sinb * sina * tx - sinb * cosa * ty + cosb * tz

    return out
