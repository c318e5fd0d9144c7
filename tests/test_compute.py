"""Tests for term dispatch, energy bookkeeping and result accessors."""

from dataclasses import fields

import numpy as np
import pytest
from conftest import QM_XYZ, QM_ZNUC
from efpcore import DispDamp, EfpError, ElecDamp, Energy, Options, Result, Terms
import efpcore.efp as efp_module


def _code(func, *args, **kwargs):
    with pytest.raises(EfpError) as excinfo:
        func(*args, **kwargs)
    return excinfo.value.result


def _component_sum(energy):
    return sum(getattr(energy, f.name) for f in fields(Energy))


def test_energy_has_ten_components():
    names = [f.name for f in fields(Energy)]
    assert len(names) == 10
    assert "total" not in names
    energy = Energy(electrostatic=1.0, ai_charge_transfer=0.5)
    assert energy.total == 1.5


@pytest.mark.parametrize("opts", [
    Options.default(),
    Options(terms=Terms.ELEC),
    Options(terms=Terms.ELEC | Terms.POL | Terms.DISP | Terms.XR),
    Options(terms=Terms.DISP | Terms.XR, disp_damp="overlap"),
    Options(terms=Terms.ELEC | Terms.XR, elec_damp=ElecDamp.OVERLAP),
    Options(terms=Terms.ELEC | Terms.POL, pol_damp="off", elec_damp="off"),
], ids=["default", "elec", "fragment", "disp-overlap", "elec-overlap", "undamped"])
def test_total_is_sum_of_components(make_efp, opts):
    """Test that the total equals the exact sum for any configuration."""
    efp = make_efp(opts)
    efp.set_qm_atoms(QM_ZNUC, QM_XYZ)
    efp.compute()
    energy = efp.get_energy()
    assert energy.total == _component_sum(energy)


def test_disabled_terms_contribute_zero(make_efp):
    efp = make_efp(Options(terms=Terms.ELEC))
    efp.compute()
    energy = efp.get_energy()
    assert energy.electrostatic != 0.0
    assert energy.polarization == 0.0
    assert energy.dispersion == 0.0
    assert energy.exchange_repulsion == 0.0
    assert energy.charge_penetration == 0.0
    assert energy.ai_electrostatic == 0.0


def test_default_terms_all_contribute(efp_qm):
    """Test the sign and presence of every enabled component."""
    efp_qm.compute()
    energy = efp_qm.get_energy()
    assert energy.polarization < 0.0
    assert energy.dispersion < 0.0
    assert energy.exchange_repulsion > 0.0
    assert energy.ai_electrostatic != 0.0
    assert energy.charge_penetration == 0.0


def test_charge_penetration_under_overlap_damping(make_efp):
    efp = make_efp(Options(terms=Terms.ELEC, elec_damp=ElecDamp.OVERLAP))
    efp.compute()
    assert efp.get_energy().charge_penetration < 0.0


def test_term_list_order():
    """Test that exchange repulsion runs first and the order is fixed."""
    names = [term.__name__ for term in efp_module.TERM_LIST]
    assert names == ["compute_xr", "compute_elec", "compute_pol",
                     "compute_disp", "compute_ai_elec"]


def test_terms_dispatched_in_order(efp, monkeypatch):
    calls = []

    def recorder(name):
        def term(ctx):
            calls.append(name)
        return term

    monkeypatch.setattr(efp_module, "TERM_LIST",
                        tuple(recorder(n) for n in ("xr", "elec", "pol", "disp", "ai_elec")))
    efp.compute()
    assert calls == ["xr", "elec", "pol", "disp", "ai_elec"]


def test_first_failure_stops_dispatch(efp, monkeypatch):
    """Test that a failing term propagates its code and later terms do not run."""
    calls = []

    def ok(ctx):
        calls.append("ok")

    def failing(ctx):
        raise EfpError(Result.POL_NOT_CONVERGED)

    def never(ctx):
        calls.append("never")

    monkeypatch.setattr(efp_module, "TERM_LIST", (ok, failing, never))
    assert _code(efp.compute) is Result.POL_NOT_CONVERGED
    assert calls == ["ok"]


def test_compute_resets_accumulators(efp_qm):
    """Test that repeated computations give identical results."""
    efp_qm.compute(do_gradient=True)
    energy1 = efp_qm.get_energy()
    grad1 = efp_qm.get_gradient()
    qm_grad1 = efp_qm.get_qm_gradient()
    stress1 = efp_qm.get_stress_tensor()

    efp_qm.compute(do_gradient=True)
    assert efp_qm.get_energy() == energy1
    np.testing.assert_allclose(efp_qm.get_gradient(), grad1, rtol=1e-10, atol=1e-14)
    np.testing.assert_allclose(efp_qm.get_qm_gradient(), qm_grad1, rtol=1e-10, atol=1e-14)
    np.testing.assert_allclose(efp_qm.get_stress_tensor(), stress1, rtol=1e-10, atol=1e-14)


def test_energy_follows_geometry(efp):
    """Test that moving a fragment changes the energy through the lab-frame refresh."""
    efp.compute()
    before = efp.get_energy().total
    coords = efp.get_coordinates()
    coords[1, 0] += 0.5
    efp.set_coordinates(6, coords)
    efp.compute()
    assert efp.get_energy().total != before


def test_gradient_accessors_require_gradient(efp_qm):
    """Test GRADIENT_NOT_REQUESTED on every gradient-bearing accessor."""
    efp_qm.compute(do_gradient=False)
    for func in (efp_qm.get_gradient, efp_qm.get_qm_gradient, efp_qm.get_stress_tensor):
        assert _code(func) is Result.GRADIENT_NOT_REQUESTED

    efp_qm.compute(do_gradient=True)
    assert efp_qm.get_gradient().shape == (3, 6)
    assert efp_qm.get_qm_gradient().shape == (2, 3)
    assert efp_qm.get_stress_tensor().shape == (3, 3)


def test_gradient_output_buffers(efp_qm):
    efp_qm.compute(do_gradient=True)
    out = np.empty(18)
    efp_qm.get_gradient(out)
    np.testing.assert_allclose(out.reshape(3, 6), efp_qm.get_gradient())
    assert _code(efp_qm.get_gradient, np.empty(12)) is Result.INVALID_ARRAY_SIZE
    assert _code(efp_qm.get_qm_gradient, np.empty((3, 3))) is Result.INVALID_ARRAY_SIZE
    assert _code(efp_qm.get_gradient, [0.0] * 18) is Result.INVALID_ARGUMENT


def test_translation_invariance_without_qm(efp):
    """Test that fragment forces sum to zero for an isolated cluster."""
    efp.compute(do_gradient=True)
    grad = efp.get_gradient()
    np.testing.assert_allclose(grad[:, :3].sum(axis=0), 0.0, atol=1e-10)


def test_energy_is_a_copy(efp):
    efp.compute()
    energy = efp.get_energy()
    energy.electrostatic = 1e6
    assert efp.get_energy().electrostatic != 1e6


def test_multipole_counts_and_layout(efp):
    """Test the grouping of charges, dipoles, quadrupoles and octupoles."""
    assert efp.get_multipole_count() == (3 * 3 + 3 * 5, 3 * 4 + 3 * 5, 15, 15)

    efp.compute()
    xyz, values = efp.get_multipoles()
    assert [x.shape for x in xyz] == [(24, 3), (27, 3), (15, 3), (15, 3)]
    assert [v.shape for v in values] == [(24,), (27, 3), (15, 6), (15, 10)]

    # per-fragment atoms first, then all multipole points
    np.testing.assert_allclose(xyz[0][:3], efp.frags[0].atom_xyz)
    np.testing.assert_allclose(xyz[0][3:6], efp.frags[1].atom_xyz)
    np.testing.assert_allclose(xyz[0][9:14], efp.frags[0].multipole_xyz)
    np.testing.assert_allclose(values[0][9:14], efp.frags[0].monopoles)

    frag = efp.frags[0]
    mean = 0.5 * (frag.induced_dipoles + frag.induced_dipoles_conj)
    np.testing.assert_allclose(values[1][:4], mean)
    assert np.any(mean != 0.0)
    np.testing.assert_allclose(values[3][:5], frag.octupoles)


def test_scf_update_matches_polarization(efp_qm):
    """Test that the SCF hook returns the polarization energy of compute()."""
    efp_qm.compute()
    expected = efp_qm.get_energy().polarization
    np.testing.assert_allclose(efp_qm.scf_update(), expected, rtol=1e-10)


def test_scf_update_without_polarization(make_efp):
    efp = make_efp(Options(terms=Terms.ELEC))
    assert efp.scf_update() == 0.0


def test_far_apart_fragments_do_not_interact(make_efp):
    """Test that the cutoff removes pairs beyond its radius."""
    opts = Options(terms=Terms.ELEC | Terms.POL | Terms.DISP | Terms.XR,
                   enable_cutoff=True, swf_cutoff=10.0)
    coords = np.array([
        [0.0, 0.0, 0.0, 0.1, 0.2, 0.3],
        [30.0, 0.0, 0.0, 0.4, 0.5, 0.6],
    ])
    efp = make_efp(opts, n_frag=2, coords=coords)
    efp.compute(do_gradient=True)
    energy = efp.get_energy()
    assert energy.total == 0.0
    np.testing.assert_array_equal(efp.get_gradient(), 0.0)


def test_periodic_image_interacts(make_efp):
    """Test that fragments a box length apart see each other's nearest image."""
    opts = Options(terms=Terms.ELEC | Terms.DISP | Terms.XR,
                   enable_pbc=True, enable_cutoff=True, swf_cutoff=10.0)
    near = np.array([
        [0.0, 0.0, 0.0, 0.1, 0.2, 0.3],
        [6.0, 0.0, 0.0, 0.4, 0.5, 0.6],
    ])
    wrapped = near.copy()
    wrapped[1, 0] -= 25.0

    efp = make_efp(opts, n_frag=2, coords=near)
    efp.set_periodic_box(25.0, 25.0, 25.0)
    efp.compute()
    e_near = efp.get_energy().total

    efp.set_coordinates(6, wrapped)
    efp.compute()
    np.testing.assert_allclose(efp.get_energy().total, e_near, rtol=1e-10)


def test_overlap_damped_dispersion_without_xr(make_efp):
    """Test that overlaps are filled for dispersion when exchange repulsion is off."""
    damped = make_efp(Options(terms=Terms.DISP, disp_damp=DispDamp.OVERLAP))
    undamped = make_efp(Options(terms=Terms.DISP, disp_damp=DispDamp.OFF))
    damped.compute()
    undamped.compute()

    overlap = damped.frags[0].overlap_int[1]
    assert np.any(overlap > 0.0)
    assert damped.get_energy().exchange_repulsion == 0.0
    assert damped.get_energy().dispersion < 0.0
    assert abs(damped.get_energy().dispersion) < abs(undamped.get_energy().dispersion)
