"""Pytest configuration and fixtures."""

import numpy as np
import pytest
from efpcore.backend import NUMBA_AVAILABLE
from efpcore import (
    Callbacks,
    CoordType,
    Efp,
    FragmentLibrary,
    Options,
    Terms,
    make_water_template,
)


def pytest_addoption(parser):
    """Add command-line options for pytest."""
    parser.addoption(
        "--runslow",
        action="store_true",
        default=False,
        help="run slow tests"
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")


def pytest_collection_modifyitems(config, items):
    """Modify test collection based on command-line options."""
    if config.getoption("--runslow"):
        return

    skip_slow = pytest.mark.skip(reason="need --runslow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture(scope="session", autouse=True)
def warmup_numba_jit():
    """Compile the numba kernels once per session.

    Keeps JIT compilation out of the timings of individual tests.
    """
    if not NUMBA_AVAILABLE:
        return

    from efpcore.elec_numba import charge_charge_numba

    xyz = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    q = np.array([1.0, -1.0])
    s = np.array([1.0, 0.0])
    charge_charge_numba(xyz, q, s, xyz + 3.0, q, s)


# Three waters a few bohr apart, (x, y, z, a, b, c) per fragment
WATER_TRIMER_XYZABC = np.array([
    [0.0, 0.0, 0.0, 0.1, 0.4, -0.3],
    [5.6, 0.4, 0.3, 1.2, 2.0, 0.5],
    [0.5, 5.9, -0.7, -0.8, 1.1, 2.4],
])

QM_ZNUC = np.array([1.0, 3.0])
QM_XYZ = np.array([
    [2.5, -3.5, 1.0],
    [-3.0, 2.0, -3.0],
])

UNIFORM_QM_FIELD = np.array([0.002, -0.001, 0.0015])


def uniform_density_field(xyz):
    """Electron density field callback returning a constant field."""
    return np.tile(UNIFORM_QM_FIELD, (xyz.shape[0], 1))


@pytest.fixture
def water_template():
    return make_water_template()


@pytest.fixture
def water_library(water_template):
    return FragmentLibrary([water_template])


@pytest.fixture
def callbacks():
    return Callbacks(get_electron_density_field=uniform_density_field)


@pytest.fixture
def make_efp(water_library, callbacks):
    """Factory for live contexts posed as a water cluster.

    Contexts created through the factory are shut down after the test.
    """
    created = []

    def _make(opts=None, n_frag=3, coords=None):
        opts = Options.default() if opts is None else opts
        efp = Efp()
        created.append(efp)
        efp.initialize(opts, water_library, "\n".join(["water"] * n_frag), callbacks)
        if coords is None:
            coords = WATER_TRIMER_XYZABC[:n_frag]
        efp.set_coordinates(CoordType.XYZABC, coords)
        return efp

    yield _make

    for efp in created:
        efp.shutdown()


@pytest.fixture
def efp(make_efp):
    """Default-option context with three waters and no QM atoms."""
    return make_efp()


@pytest.fixture
def efp_qm(make_efp):
    """Default-option context with three waters and two QM atoms."""
    efp = make_efp()
    efp.set_qm_atoms(QM_ZNUC, QM_XYZ)
    return efp


@pytest.fixture
def fragment_only_opts():
    return Options(terms=Terms.ELEC | Terms.POL | Terms.DISP | Terms.XR)
