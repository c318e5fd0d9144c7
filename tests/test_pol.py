"""Tests for the polarization solver and its callback coupling."""

import numpy as np
import pytest
from conftest import UNIFORM_QM_FIELD
from efpcore import EfpError, Options, Result, Terms
from efpcore import pol


def _code(func, *args):
    with pytest.raises(EfpError) as excinfo:
        func(*args)
    return excinfo.value.result


def test_induced_dipoles_solve_linear_system(efp):
    """Test that converged dipoles satisfy mu = A (E0 + T mu) to tolerance."""
    efp.compute()
    sites = pol.gather_sites(efp)
    pairs = pol._pair_table(efp)
    E0 = pol.static_field(efp, sites, pairs)
    T = pol.dipole_matrix(efp, sites, pairs)

    mu = np.vstack([frag.induced_dipoles for frag in efp.frags])
    mu_conj = np.vstack([frag.induced_dipoles_conj for frag in efp.frags])

    # direct solve of (A^-1 - T) mu = E0
    A_inv = np.zeros_like(T)
    A_inv_t = np.zeros_like(T)
    for n, a in enumerate(sites.tensors):
        A_inv[3 * n:3 * n + 3, 3 * n:3 * n + 3] = np.linalg.inv(a)
        A_inv_t[3 * n:3 * n + 3, 3 * n:3 * n + 3] = np.linalg.inv(a.T)
    direct = np.linalg.solve(A_inv - T, E0.ravel()).reshape(-1, 3)
    direct_conj = np.linalg.solve(A_inv_t - T, E0.ravel()).reshape(-1, 3)

    np.testing.assert_allclose(mu, direct, atol=1e-9)
    np.testing.assert_allclose(mu_conj, direct_conj, atol=1e-9)
    assert not np.allclose(mu, mu_conj)

    # all three energy expressions agree at convergence
    energy = efp.get_energy().polarization
    np.testing.assert_allclose(energy, -0.5 * np.sum(direct * E0), rtol=1e-8)
    np.testing.assert_allclose(energy, -0.5 * np.sum(direct_conj * E0), rtol=1e-8)


def test_dipole_matrix_is_symmetric(efp):
    sites = pol.gather_sites(efp)
    T = pol.dipole_matrix(efp, sites, pol._pair_table(efp))
    np.testing.assert_allclose(T, T.T)
    # no coupling inside a fragment
    assert not T[:12, :12].any()


def test_static_field_includes_density_callback(make_efp):
    """Test that the callback field is added only under ab initio polarization."""
    with_ai = make_efp()
    without_ai = make_efp(Options(terms=Terms.ELEC | Terms.POL | Terms.DISP | Terms.XR))

    fields = []
    for efp in (with_ai, without_ai):
        sites = pol.gather_sites(efp)
        fields.append(pol.static_field(efp, sites, pol._pair_table(efp)))

    np.testing.assert_allclose(fields[0] - fields[1],
                               np.tile(UNIFORM_QM_FIELD, (fields[0].shape[0], 1)), atol=1e-14)


def test_callback_failure(efp):
    def broken(xyz):
        raise RuntimeError("wavefunction not available")

    efp.callbacks.get_electron_density_field = broken
    with pytest.raises(EfpError) as excinfo:
        efp.compute()
    assert excinfo.value.result is Result.CALLBACK_FAILED
    assert "wavefunction not available" in str(excinfo.value)


def test_callback_wrong_shape(efp):
    efp.callbacks.get_electron_density_field = lambda xyz: np.zeros((2, 3))
    assert _code(efp.compute) is Result.CALLBACK_FAILED
    assert _code(efp.scf_update) is Result.CALLBACK_FAILED


def test_callbacks_copied_at_initialize(water_library, callbacks):
    """Test that the context keeps its own copy of the callback table."""
    from efpcore import Efp

    efp = Efp()
    efp.initialize(Options.default(), water_library, "water", callbacks)
    callbacks.get_electron_density_field = None
    assert efp.callbacks.get_electron_density_field is not None
    efp.shutdown()


def test_not_converged(efp, monkeypatch, caplog):
    """Test that running out of iterations reports POL_NOT_CONVERGED."""
    monkeypatch.setattr(pol, "POL_SCF_MAX_ITER", 2)
    with caplog.at_level("WARNING", logger="efpcore.pol"):
        assert _code(efp.compute) is Result.POL_NOT_CONVERGED
    assert "not converged" in caplog.text


def test_tt_damping_derivative():
    r = np.linspace(0.3, 6.0, 25)
    h = 1e-6
    f, fp = pol.pol_tt_damping(r)
    numeric = (pol.pol_tt_damping(r + h)[0] - pol.pol_tt_damping(r - h)[0]) / (2 * h)
    np.testing.assert_allclose(fp, numeric, atol=1e-8)
    assert np.all((f > 0.0) & (f < 1.0))


def test_charge_dipole_gradient():
    """Test the charge-dipole kernel against central differences."""
    rng = np.random.default_rng(4)
    p = rng.normal(size=(3, 3))
    mu = rng.normal(size=(3, 3))
    q_xyz = rng.normal(size=(4, 3)) + 4.0
    q = rng.normal(size=4)

    _, grad_p, grad_q, _ = pol.charge_dipole(p, mu, q_xyz, q, damp=True)

    h = 1e-6
    for k in range(3):
        step = np.zeros_like(p)
        step[1, k] = h
        ep = pol.charge_dipole(p + step, mu, q_xyz, q, damp=True)[0]
        em = pol.charge_dipole(p - step, mu, q_xyz, q, damp=True)[0]
        np.testing.assert_allclose(grad_p[1, k], (ep - em) / (2 * h), atol=1e-7)

        step = np.zeros_like(q_xyz)
        step[2, k] = h
        ep = pol.charge_dipole(p, mu, q_xyz + step, q, damp=True)[0]
        em = pol.charge_dipole(p, mu, q_xyz - step, q, damp=True)[0]
        np.testing.assert_allclose(grad_q[2, k], (ep - em) / (2 * h), atol=1e-7)


def test_dipole_dipole_gradient():
    rng = np.random.default_rng(8)
    p_a = rng.normal(size=(2, 3))
    p_b = rng.normal(size=(3, 3)) + 5.0
    mu_a = rng.normal(size=(2, 3))
    mu_b = rng.normal(size=(3, 3))

    energy, grad_a, _, _ = pol.dipole_dipole(p_a, mu_a, p_b, mu_b)
    T = pol.dipole_tensor(p_a[:, None, :] - p_b[None, :, :])
    np.testing.assert_allclose(energy, -np.einsum("ni,nmij,mj->", mu_a, T, mu_b))

    h = 1e-6
    for k in range(3):
        step = np.zeros_like(p_a)
        step[0, k] = h
        ep = pol.dipole_dipole(p_a + step, mu_a, p_b, mu_b)[0]
        em = pol.dipole_dipole(p_a - step, mu_a, p_b, mu_b)[0]
        np.testing.assert_allclose(grad_a[0, k], (ep - em) / (2 * h), atol=1e-7)
