"""Numba-accelerated site-pair kernels for electrostatics.

These are the primary implementations used when computing energies.
They maintain the same physics as the reference Python implementation in
efpcore/elec.py.

Note: This module requires numba to be installed. Functions will raise ImportError
if called without numba. Use backend.require_numba() to check availability before use.
"""

import numpy as np
from .backend import njit, NUMBA_AVAILABLE

if not NUMBA_AVAILABLE:
    # If numba is not available, create stub functions that raise on call
    # This allows the module to be imported, but functions fail clearly when used
    def _raise_numba_error():
        raise ImportError(
            "Numba is required for performance kernels. "
            "Install with: pip install numba"
        )

    def charge_charge_numba(*args, **kwargs):
        _raise_numba_error()
else:
    @njit(cache=True)
    def charge_charge_numba(xyz_a, q_a, s_a, xyz_b, q_b, s_b):
        """Numba-accelerated charge-charge energy and gradient.

        Args:
            xyz_a: Positions of set A, shape (n, 3)
            q_a: Charges of set A, shape (n,)
            s_a: Screening exponents of set A, shape (n,), 0 means unscreened
            xyz_b: Positions of set B, shape (m, 3)
            q_b: Charges of set B, shape (m,)
            s_b: Screening exponents of set B, shape (m,)

        Returns:
            Tuple (energy, grad_a, grad_b, virial)
        """
        n = xyz_a.shape[0]
        m = xyz_b.shape[0]
        energy = 0.0
        grad_a = np.zeros((n, 3))
        grad_b = np.zeros((m, 3))
        virial = np.zeros((3, 3))

        for a in range(n):
            for b in range(m):
                dx = xyz_b[b, 0] - xyz_a[a, 0]
                dy = xyz_b[b, 1] - xyz_a[a, 1]
                dz = xyz_b[b, 2] - xyz_a[a, 2]
                r2 = dx*dx + dy*dy + dz*dz
                r = np.sqrt(r2)
                qq = q_a[a] * q_b[b]

                f = 1.0
                fp = 0.0
                if s_a[a] > 0.0 and s_b[b] > 0.0:
                    s = np.sqrt(s_a[a] * s_b[b])
                    e_s = np.exp(-s * r)
                    f = 1.0 - e_s
                    fp = s * e_s

                energy += qq * f / r
                dedr = qq * (fp / r - f / r2)
                gx = dedr * dx / r
                gy = dedr * dy / r
                gz = dedr * dz / r

                grad_b[b, 0] += gx
                grad_b[b, 1] += gy
                grad_b[b, 2] += gz
                grad_a[a, 0] -= gx
                grad_a[a, 1] -= gy
                grad_a[a, 2] -= gz

                virial[0, 0] += dx * gx
                virial[0, 1] += dx * gy
                virial[0, 2] += dx * gz
                virial[1, 0] += dy * gx
                virial[1, 1] += dy * gy
                virial[1, 2] += dy * gz
                virial[2, 0] += dz * gx
                virial[2, 1] += dz * gy
                virial[2, 2] += dz * gz

        return energy, grad_a, grad_b, virial
