import numpy as np


class ConeSensError(Exception):
    """Base class for every error raised by conesens."""


class DimensionError(ConeSensError, ValueError):
    """Problem data, cone layout or perturbation shapes are inconsistent."""


class UnsupportedConeError(ConeSensError, NotImplementedError):
    """A cone kind has no projection derivative."""

    def __init__(self, kind):
        self.kind = kind
        super().__init__("Cone %r is not supported" % (kind,))


class SingularSystemError(ConeSensError, np.linalg.LinAlgError):
    """The derivative system is numerically singular at the solution point."""

    def __init__(self, detail=None):
        msg = "solution point is not differentiable (degenerate KKT system)"
        if detail:
            msg = "%s: %s" % (msg, detail)
        super().__init__(msg)


class NotFactorizedError(ConeSensError, RuntimeError):
    """A solve was requested before a successful factorization."""


class SolverError(ConeSensError):
    pass
