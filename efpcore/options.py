"""Engine options and their consistency checks."""

import logging
from dataclasses import dataclass, replace
from enum import Enum, Flag, auto

from .results import EfpError, Result

logger = logging.getLogger(__name__)

# Smallest switching function cutoff accepted, bohr
MIN_SWF_CUTOFF = 1.0


class Terms(Flag):
    """Interaction terms that can be switched on."""
    NONE = 0
    ELEC = auto()
    POL = auto()
    DISP = auto()
    XR = auto()
    CHTR = auto()
    AI_ELEC = auto()
    AI_POL = auto()
    AI_DISP = auto()
    AI_XR = auto()
    AI_CHTR = auto()


AI_TERMS = (Terms.AI_ELEC | Terms.AI_POL | Terms.AI_DISP |
            Terms.AI_XR | Terms.AI_CHTR)

# (term, prerequisite) pairs
TERM_PREREQUISITES = (
    (Terms.AI_ELEC, Terms.ELEC),
    (Terms.AI_POL, Terms.POL),
    (Terms.POL, Terms.ELEC),
    (Terms.AI_DISP, Terms.DISP),
    (Terms.AI_XR, Terms.XR),
    (Terms.AI_CHTR, Terms.CHTR),
)


class ElecDamp(Enum):
    """Electrostatic damping schemes."""
    SCREEN = "screen"
    OVERLAP = "overlap"
    OFF = "off"


class DispDamp(Enum):
    """Dispersion damping schemes."""
    TT = "tt"
    OVERLAP = "overlap"
    OFF = "off"


class PolDamp(Enum):
    """Polarization damping schemes."""
    TT = "tt"
    OFF = "off"


class CoordType(Enum):
    """Fragment pose representations accepted by set_coordinates.

    XYZABC: 6 values per fragment (x, y, z, Euler a, b, c)
    POINTS: 9 values per fragment (three lab-frame points)
    ROTMAT: 12 values per fragment (x, y, z, row-major 3x3 rotation)
    """
    XYZABC = 6
    POINTS = 9
    ROTMAT = 12

    @property
    def stride(self):
        return self.value


@dataclass
class Options:
    """Engine configuration.

    Attributes:
        terms: Enabled interaction terms
        elec_damp: Electrostatic damping scheme
        disp_damp: Dispersion damping scheme
        pol_damp: Polarization damping scheme
        enable_pbc: Periodic boundary conditions
        enable_cutoff: Switching function cutoff on fragment-fragment terms
        swf_cutoff: Switching function cutoff radius, bohr
    """
    terms: Terms = Terms.NONE
    elec_damp: ElecDamp = ElecDamp.SCREEN
    disp_damp: DispDamp = DispDamp.TT
    pol_damp: PolDamp = PolDamp.TT
    enable_pbc: bool = False
    enable_cutoff: bool = False
    swf_cutoff: float = 0.0

    @classmethod
    def default(cls):
        """Options with the standard set of terms switched on."""
        return cls(terms=(Terms.ELEC | Terms.POL | Terms.DISP | Terms.XR |
                          Terms.AI_ELEC | Terms.AI_POL))


def _coerce(enum_cls, value, name):
    try:
        return enum_cls(value)
    except ValueError:
        raise EfpError(Result.INCORRECT_ENUM_VALUE,
                       f"{name}={value!r}") from None


def check_opts(opts):
    """Validate an option set before any fragment work begins.

    Checks run in a fixed order and the first violation wins.

    Args:
        opts: Options instance

    Returns:
        A normalized copy of opts with damping selectors as enum members

    Raises:
        EfpError: INVALID_ARGUMENT, INCONSISTENT_TERMS, INCORRECT_ENUM_VALUE,
            PBC_NOT_SUPPORTED, PBC_REQUIRES_CUTOFF or SWF_CUTOFF_TOO_SMALL
    """
    if not isinstance(opts, Options):
        raise EfpError(Result.INVALID_ARGUMENT, "options must be an Options instance")

    if not isinstance(opts.terms, Terms):
        raise EfpError(Result.INCORRECT_ENUM_VALUE, f"terms={opts.terms!r}")

    terms = opts.terms
    for term, prerequisite in TERM_PREREQUISITES:
        if (term & terms) and not (prerequisite & terms):
            raise EfpError(Result.INCONSISTENT_TERMS,
                           f"{term.name} requires {prerequisite.name}")

    normalized = replace(
        opts,
        elec_damp=_coerce(ElecDamp, opts.elec_damp, "elec_damp"),
        disp_damp=_coerce(DispDamp, opts.disp_damp, "disp_damp"),
        pol_damp=_coerce(PolDamp, opts.pol_damp, "pol_damp"),
    )

    if opts.enable_pbc:
        if terms & AI_TERMS:
            raise EfpError(Result.PBC_NOT_SUPPORTED)
        if not opts.enable_cutoff:
            raise EfpError(Result.PBC_REQUIRES_CUTOFF)

    try:
        swf_cutoff = float(opts.swf_cutoff)
    except (TypeError, ValueError):
        raise EfpError(Result.INVALID_ARGUMENT, f"swf_cutoff={opts.swf_cutoff!r}") from None
    if opts.enable_cutoff and swf_cutoff < MIN_SWF_CUTOFF:
        raise EfpError(Result.SWF_CUTOFF_TOO_SMALL, f"swf_cutoff={swf_cutoff}")

    logger.debug("options accepted: terms=%s", terms)
    return replace(normalized, swf_cutoff=swf_cutoff)


def check_params_frag(opts, frag, index=None):
    """Check that a fragment carries the parameters the enabled terms need.

    Args:
        opts: Validated Options instance
        frag: Fragment instance
        index: Fragment index, used only for the error detail

    Raises:
        EfpError: PARAMETERS_MISSING naming the fragment and term at fault
    """
    def missing(term, what):
        where = frag.name if index is None else f"fragment {index} ({frag.name})"
        return EfpError(Result.PARAMETERS_MISSING, f"{where}: {term} needs {what}")

    terms = opts.terms
    if terms & Terms.ELEC:
        if frag.multipole_xyz is None:
            raise missing("ELEC", "multipole points")
        if opts.elec_damp == ElecDamp.SCREEN and frag.screen_params is None:
            raise missing("ELEC", "screening parameters")
    if terms & Terms.POL:
        if frag.polarizable_xyz is None:
            raise missing("POL", "polarizable points")
    if terms & Terms.DISP:
        if frag.dynamic_polarizable_xyz is None:
            raise missing("DISP", "dynamic polarizable points")
        if (opts.disp_damp == DispDamp.OVERLAP and
                frag.n_lmo != frag.n_dynamic_polarizable_pts):
            raise missing("DISP", "one LMO per dynamic polarizable point")
    if terms & Terms.XR:
        if (frag.xr_shells is None or frag.xr_fock_mat is None or
                frag.xr_wf is None or frag.lmo_centroids is None):
            raise missing("XR", "basis, Fock matrix, wavefunction and LMO centroids")
