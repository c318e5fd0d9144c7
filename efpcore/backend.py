"""Performance backend selection and requirements.

This module centralizes the decision to use Numba-accelerated kernels
for the site-pair loops of the interaction terms.

Numba is required for energy and gradient evaluation. Python reference
implementations are kept for correctness testing, not for production runs.
"""

import os

# Try to import numba
try:
    from numba import njit
    NUMBA_AVAILABLE = True
except ImportError:
    NUMBA_AVAILABLE = False
    njit = None


def python_fallback_allowed():
    """Return True if the EFP_ALLOW_PYTHON escape hatch is set."""
    return os.getenv("EFP_ALLOW_PYTHON", "0").lower() in ("1", "true", "yes")


def require_numba(feature: str):
    """Require Numba to be available, raising a clear error if not.
    
    Args:
        feature: Description of the feature that requires numba (e.g., "electrostatic kernels")
        
    Raises:
        ImportError: If numba is not available and fallback is not allowed
    """
    if NUMBA_AVAILABLE:
        return
    
    if python_fallback_allowed():
        # Escape hatch: allow fallback (for tiny unit tests only)
        return
    
    # Default: strict requirement
    raise ImportError(
        f"Numba is required for {feature}. "
        f"Install with: pip install numba\n"
        f"(To allow Python fallback for unit tests only, set EFP_ALLOW_PYTHON=1)"
    )


__all__ = ["NUMBA_AVAILABLE", "require_numba", "python_fallback_allowed", "njit"]
