"""Result codes and the exception that carries them."""

from enum import IntEnum


class Result(IntEnum):
    """Outcome of an engine operation.

    Every failing operation raises :class:`EfpError` with exactly one of
    these members; callers branch on the member, not on the message.
    """
    SUCCESS = 0
    NO_MEMORY = 1
    INVALID_ARGUMENT = 2
    NOT_INITIALIZED = 3
    FILE_NOT_FOUND = 4
    SYNTAX_ERROR = 5
    UNKNOWN_FRAGMENT = 6
    DUPLICATE_PARAMETERS = 7
    CALLBACK_NOT_SET = 8
    CALLBACK_FAILED = 9
    GRADIENT_NOT_REQUESTED = 10
    PBC_NOT_SUPPORTED = 11
    PBC_REQUIRES_CUTOFF = 12
    SWF_CUTOFF_TOO_SMALL = 13
    BOX_TOO_SMALL = 14
    NEED_THREE_ATOMS = 15
    POL_NOT_CONVERGED = 16
    PARAMETERS_MISSING = 17
    INCORRECT_ENUM_VALUE = 18
    INVALID_ROTATION_MATRIX = 19
    INDEX_OUT_OF_RANGE = 20
    INVALID_ARRAY_SIZE = 21
    UNSUPPORTED_SCREEN = 22
    INCONSISTENT_TERMS = 23


_DESCRIPTIONS = {
    Result.SUCCESS: "no error",
    Result.NO_MEMORY: "out of memory",
    Result.INVALID_ARGUMENT: "invalid argument to function was specified",
    Result.NOT_INITIALIZED: "structure was not properly initialized",
    Result.FILE_NOT_FOUND: "EFP potential data file not found",
    Result.SYNTAX_ERROR: "syntax error in potential data",
    Result.UNKNOWN_FRAGMENT: "unknown EFP fragment type",
    Result.DUPLICATE_PARAMETERS:
        "fragment parameters contain fragments with the same name",
    Result.CALLBACK_NOT_SET: "required callback function is not set",
    Result.CALLBACK_FAILED: "callback function failed",
    Result.GRADIENT_NOT_REQUESTED: "gradient computation was not requested",
    Result.PBC_NOT_SUPPORTED:
        "periodic simulation is not supported for selected energy terms",
    Result.PBC_REQUIRES_CUTOFF:
        "interaction cutoff must be enabled for periodic simulation",
    Result.SWF_CUTOFF_TOO_SMALL: "switching function cutoff is too small",
    Result.BOX_TOO_SMALL: "periodic simulation box is too small",
    Result.NEED_THREE_ATOMS: "fragment must contain at least three atoms",
    Result.POL_NOT_CONVERGED: "polarization SCF did not converge",
    Result.PARAMETERS_MISSING: "required EFP fragment parameters are missing",
    Result.INCORRECT_ENUM_VALUE: "incorrect enumeration value",
    Result.INVALID_ROTATION_MATRIX: "invalid rotation matrix specified",
    Result.INDEX_OUT_OF_RANGE: "index is out of range",
    Result.INVALID_ARRAY_SIZE: "invalid array size",
    Result.UNSUPPORTED_SCREEN: "unsupported SCREEN group found in EFP data",
    Result.INCONSISTENT_TERMS: "inconsistent EFP energy terms selected",
}


def result_to_string(result):
    """Return a stable human-readable description of a result code.

    Args:
        result: Result member or its integer value

    Returns:
        Description string; "unknown result" for values outside the enumeration
    """
    try:
        return _DESCRIPTIONS[Result(result)]
    except (ValueError, TypeError):
        return "unknown result"


class EfpError(Exception):
    """Failure of an engine operation.

    Attributes:
        result: The Result member describing the failure
        detail: Optional extra context (fragment index, term name, file name)
    """

    def __init__(self, result, detail=None):
        self.result = Result(result)
        self.detail = detail
        message = result_to_string(self.result)
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
