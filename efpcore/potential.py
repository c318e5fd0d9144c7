"""Fragment library: loading potential data files and creating instances.

Potential data is stored as JSON. A file holds either one fragment record
or {"fragments": [record, ...]}. A record looks like

    {
      "name": "water",
      "atoms": [{"label": "O1", "xyz": [0, 0, 0], "znuc": 8.0, "mass": 15.995}],
      "multipoles": [{"xyz": [...], "monopole": q, "dipole": [...],
                      "quadrupole": [6 values], "octupole": [10 values]}],
      "screen": [{"group": "SCREEN2", "params": [...]},
                 {"group": "SCREEN", "params": [...]}],
      "polarizable_points": [{"xyz": [...], "tensor": [[...], [...], [...]]}],
      "dynamic_polarizable_points": [{"xyz": [...], "tensors": [12 x 3x3]}],
      "lmo_centroids": [[...], ...],
      "basis": [{"type": "S", "xyz": [...], "coef": [[exponent, coef], ...]}],
      "fock_matrix": [packed lower triangle],
      "wavefunction": [[...], ...]
    }

Every group except name and atoms is optional. SCREEN2 carries the
electrostatic screening exponents, SCREEN the ab initio ones.
"""

import copy
import json
import logging
from pathlib import Path

import numpy as np

from .fragment import Fragment, Shell
from .results import EfpError, Result

logger = logging.getLogger(__name__)

SCREEN_GROUPS = {
    "SCREEN2": "screen_params",
    "SCREEN": "ai_screen_params",
}


class FragmentLibrary:
    """Ordered collection of fragment templates with case-insensitive lookup."""

    def __init__(self, templates=()):
        self._templates = []
        for template in templates:
            self.add(template)

    def add(self, template):
        """Add a template.

        Raises:
            EfpError: DUPLICATE_PARAMETERS if a template with the same name exists
        """
        if template.name in self:
            raise EfpError(Result.DUPLICATE_PARAMETERS, template.name)
        self._templates.append(template)

    def find(self, name):
        """Template whose name matches case-insensitively, or None."""
        key = name.lower()
        for template in self._templates:
            if template.name.lower() == key:
                return template
        return None

    @property
    def names(self):
        return [template.name for template in self._templates]

    def __len__(self):
        return len(self._templates)

    def __iter__(self):
        return iter(self._templates)

    def __contains__(self, name):
        return self.find(name) is not None

    def copy(self):
        """Library holding independent copies of every template.

        Raises:
            EfpError: NO_MEMORY if a template cannot be copied
        """
        try:
            return FragmentLibrary(copy.deepcopy(t) for t in self._templates)
        except MemoryError:
            raise EfpError(Result.NO_MEMORY, "copying fragment library") from None


def _split_list(text):
    if isinstance(text, (str, Path)):
        items = str(text).splitlines()
    else:
        try:
            items = [str(item) for item in text]
        except TypeError:
            raise EfpError(Result.INVALID_ARGUMENT,
                           f"expected a newline-delimited string or a sequence, got {text!r}") from None
    return [item.strip() for item in items if item.strip()]


def _stack(records, key, shape):
    arr = np.array([rec[key] for rec in records], dtype=np.float64)
    return arr.reshape((len(records),) + shape)


def template_from_dict(record):
    """Build a fragment template from one decoded JSON record.

    Raises:
        EfpError: SYNTAX_ERROR for missing or malformed fields,
            UNSUPPORTED_SCREEN for an unknown screening group
    """
    try:
        name = str(record["name"]).strip()
        if not name:
            raise ValueError("empty fragment name")
        atoms = record["atoms"]
        kwargs = dict(
            name=name,
            atom_labels=[atom.get("label", f"A{k + 1:02d}") for k, atom in enumerate(atoms)],
            atom_xyz=_stack(atoms, "xyz", (3,)),
            atom_znuc=np.array([atom["znuc"] for atom in atoms], dtype=np.float64),
            atom_mass=np.array([atom["mass"] for atom in atoms], dtype=np.float64),
        )

        mult = record.get("multipoles")
        if mult:
            kwargs["multipole_xyz"] = _stack(mult, "xyz", (3,))
            kwargs["monopoles"] = np.array([pt.get("monopole", 0.0) for pt in mult])
            kwargs["dipoles"] = np.array([pt.get("dipole", [0.0] * 3) for pt in mult])
            kwargs["quadrupoles"] = np.array([pt.get("quadrupole", [0.0] * 6) for pt in mult])
            kwargs["octupoles"] = np.array([pt.get("octupole", [0.0] * 10) for pt in mult])

        for group in record.get("screen", []):
            label = str(group["group"]).upper()
            if label not in SCREEN_GROUPS:
                raise EfpError(Result.UNSUPPORTED_SCREEN, f"{name}: {label}")
            kwargs[SCREEN_GROUPS[label]] = np.array(group["params"], dtype=np.float64)

        pol = record.get("polarizable_points")
        if pol:
            kwargs["polarizable_xyz"] = _stack(pol, "xyz", (3,))
            kwargs["polarizable_tensors"] = _stack(pol, "tensor", (3, 3))

        dyn = record.get("dynamic_polarizable_points")
        if dyn:
            kwargs["dynamic_polarizable_xyz"] = _stack(dyn, "xyz", (3,))
            kwargs["dynamic_polarizable_tensors"] = np.array(
                [pt["tensors"] for pt in dyn], dtype=np.float64)

        if record.get("lmo_centroids"):
            kwargs["lmo_centroids"] = np.array(record["lmo_centroids"], dtype=np.float64)
        if record.get("basis"):
            kwargs["xr_shells"] = [Shell(sh["type"], sh["xyz"], sh["coef"])
                                   for sh in record["basis"]]
        if record.get("fock_matrix"):
            kwargs["xr_fock_mat"] = np.array(record["fock_matrix"], dtype=np.float64)
        if record.get("wavefunction"):
            kwargs["xr_wf"] = np.array(record["wavefunction"], dtype=np.float64)

        template = Fragment(**kwargs)
    except EfpError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        where = record.get("name", "<unnamed>") if isinstance(record, dict) else "<record>"
        raise EfpError(Result.SYNTAX_ERROR, f"{where}: {exc}") from exc

    _check_xr_sizes(template)
    return template


def _check_xr_sizes(template):
    n_lmo = template.n_lmo
    fock = template.xr_fock_mat
    if fock is not None and fock.size != n_lmo * (n_lmo + 1) // 2:
        raise EfpError(Result.SYNTAX_ERROR,
                       f"{template.name}: Fock matrix size {fock.size} for {n_lmo} LMOs")
    if template.xr_wf is not None and template.xr_wf.shape[0] != n_lmo:
        raise EfpError(Result.SYNTAX_ERROR,
                       f"{template.name}: wavefunction has {template.xr_wf.shape[0]} rows "
                       f"for {n_lmo} LMOs")


def template_to_dict(template):
    """Inverse of template_from_dict, for writing potential files."""
    record = {
        "name": template.name,
        "atoms": [{"label": label, "xyz": xyz.tolist(), "znuc": float(z), "mass": float(m)}
                  for label, xyz, z, m in zip(template.atom_labels, template.atom_xyz,
                                              template.atom_znuc, template.atom_mass)],
    }
    if template.multipole_xyz is not None:
        record["multipoles"] = [
            {"xyz": xyz.tolist(), "monopole": float(q), "dipole": d.tolist(),
             "quadrupole": quad.tolist(), "octupole": octu.tolist()}
            for xyz, q, d, quad, octu in zip(template.multipole_xyz, template.monopoles,
                                             template.dipoles, template.quadrupoles,
                                             template.octupoles)]
    screen = []
    for label, attr in SCREEN_GROUPS.items():
        params = getattr(template, attr)
        if params is not None:
            screen.append({"group": label, "params": params.tolist()})
    if screen:
        record["screen"] = screen
    if template.polarizable_xyz is not None:
        record["polarizable_points"] = [
            {"xyz": xyz.tolist(), "tensor": t.tolist()}
            for xyz, t in zip(template.polarizable_xyz, template.polarizable_tensors)]
    if template.dynamic_polarizable_xyz is not None:
        record["dynamic_polarizable_points"] = [
            {"xyz": xyz.tolist(), "tensors": t.tolist()}
            for xyz, t in zip(template.dynamic_polarizable_xyz,
                              template.dynamic_polarizable_tensors)]
    if template.lmo_centroids is not None:
        record["lmo_centroids"] = template.lmo_centroids.tolist()
    if template.xr_shells is not None:
        record["basis"] = [{"type": sh.type, "xyz": sh.xyz.tolist(), "coef": sh.coef.tolist()}
                           for sh in template.xr_shells]
    if template.xr_fock_mat is not None:
        record["fock_matrix"] = template.xr_fock_mat.tolist()
    if template.xr_wf is not None:
        record["wavefunction"] = template.xr_wf.tolist()
    return record


def write_potential(path, templates):
    """Write templates to one JSON potential file."""
    data = {"fragments": [template_to_dict(t) for t in templates]}
    Path(path).write_text(json.dumps(data, indent=1))


def _read_file(path, library):
    path = Path(path)
    if not path.is_file():
        raise EfpError(Result.FILE_NOT_FOUND, str(path))
    try:
        data = json.loads(path.read_text())
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise EfpError(Result.SYNTAX_ERROR, f"{path}: {exc}") from exc

    if isinstance(data, dict) and "fragments" in data:
        records = data["fragments"]
    else:
        records = [data]
    if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
        raise EfpError(Result.SYNTAX_ERROR, f"{path}: expected fragment records")

    for record in records:
        library.add(template_from_dict(record))
    return len(records)


def read_potential(file_list):
    """Load every template named by a newline-delimited list of files.

    Args:
        file_list: Newline-delimited string of paths, or a sequence of paths

    Returns:
        FragmentLibrary

    Raises:
        EfpError: FILE_NOT_FOUND, SYNTAX_ERROR, UNSUPPORTED_SCREEN,
            DUPLICATE_PARAMETERS
    """
    library = FragmentLibrary()
    paths = _split_list(file_list)
    for path in paths:
        n = _read_file(path, library)
        logger.debug("read %d fragment(s) from %s", n, path)
    logger.debug("library holds %d templates from %d files", len(library), len(paths))
    return library


def instantiate(library, names):
    """Create one independent instance per requested name, in order.

    Args:
        library: FragmentLibrary
        names: Newline-delimited string or sequence of names; blank entries
            are skipped and surrounding whitespace is ignored

    Returns:
        List of Fragment instances

    Raises:
        EfpError: UNKNOWN_FRAGMENT (also for a list with no names),
            INVALID_ARGUMENT, NO_MEMORY
    """
    names = _split_list(names)
    if not names:
        raise EfpError(Result.UNKNOWN_FRAGMENT, "empty fragment name list")
    frags = []
    for name in names:
        template = library.find(name)
        if template is None:
            raise EfpError(Result.UNKNOWN_FRAGMENT, name)
        frags.append(template.clone())
    return frags
