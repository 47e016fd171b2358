import logging

import numpy as np
import scipy.linalg as la
import scipy.sparse as sparse
from scipy.sparse import linalg as splinalg

from conesens.cones import transpose_linear_operator
from conesens.errors import (DimensionError, NotFactorizedError,
                             SingularSystemError)

log = logging.getLogger(__name__)

METHODS = ["lu", "dense", "lsqr", "lsmr"]
ITERATIVE_METHODS = ("lsqr", "lsmr")
DEFAULT_METHOD = "lu"
DEFAULT_RCOND = 1e-12
DEFAULT_RESIDUAL_TOL = 1e-6


class LinearSolver(object):
    """Factorizes a square system once and solves it for many right-hand
    sides, with or without transposition.

    Methods:
        lu: sparse LU (SuperLU with COLAMD ordering).
        dense: dense LU with partial pivoting (LAPACK getrf).
        lsqr, lsmr: iterative least squares. Nothing is factorized; every
            solve is capped at `iter_lim` iterations and its residual is
            checked against `residual_tol`. `factorize` runs one solve
            with a fixed random right-hand side, which fails for a
            singular M.

    A factorization whose smallest pivot is below `rcond` times the largest
    is rejected as singular. Solves never write to shared state, so one
    factorization can serve concurrent callers.
    """

    def __init__(self, method=DEFAULT_METHOD, rcond=DEFAULT_RCOND,
                 atol=1e-12, btol=1e-12, iter_lim=None,
                 residual_tol=DEFAULT_RESIDUAL_TOL):
        if method not in METHODS:
            raise ValueError("Unsupported method {}; the supported methods "
                             "are {}".format(method, METHODS))
        self.method = method
        self.rcond = rcond
        self.atol = atol
        self.btol = btol
        self.iter_lim = iter_lim
        self.residual_tol = residual_tol
        self._factor = None
        self._size = None

    @property
    def is_factorized(self):
        return self._factor is not None

    @property
    def size(self):
        return self._size

    def reset(self):
        self._factor = None
        self._size = None

    def factorize(self, M):
        """Factorizes the square matrix (or LinearOperator, for iterative
        methods) `M`.

        Raises:
            DimensionError: if `M` is not square.
            SingularSystemError: if `M` is numerically singular.
        """
        self.reset()
        if M.shape[0] != M.shape[1]:
            raise DimensionError("Cannot factorize a non-square %s system" %
                                 (M.shape,))
        size = M.shape[0]

        if self.method == "lu":
            try:
                lu = splinalg.splu(sparse.csc_matrix(M), permc_spec="COLAMD")
            except RuntimeError as e:
                raise SingularSystemError(str(e)) from e
            self._check_pivots(lu.U.diagonal())
            factor = lu
        elif self.method == "dense":
            M = M.toarray() if sparse.issparse(M) else np.asarray(M)
            lu, piv = la.lu_factor(M)
            self._check_pivots(np.diag(lu))
            factor = (lu, piv)
        else:
            op = splinalg.aslinearoperator(M)
            factor = (op, transpose_linear_operator(op))

        self._factor = factor
        self._size = size
        if self.method in ITERATIVE_METHODS:
            self._check_rank()
        log.debug("factorized %d x %d system with method %s",
                  size, size, self.method)

    def _check_rank(self):
        # a fixed random rhs is outside the range of a singular M almost
        # surely, so the residual check of one solve exposes it
        r = np.random.RandomState(0).randn(self._size)
        try:
            self._solve(r, transpose=False)
        except SingularSystemError:
            self.reset()
            raise

    def _check_pivots(self, pivots):
        pivots = np.abs(pivots)
        if pivots.size == 0:
            return
        largest = pivots.max()
        smallest = pivots.min()
        if not np.isfinite(largest) or smallest <= self.rcond * largest:
            raise SingularSystemError(
                "pivot ratio %.3g is below rcond=%.3g" %
                (smallest / largest if largest else 0.0, self.rcond))

    def solve(self, r):
        """Returns z with M z = r."""
        return self._solve(r, transpose=False)

    def solve_transpose(self, r):
        """Returns z with M^T z = r."""
        return self._solve(r, transpose=True)

    def _solve(self, r, transpose):
        factor = self._factor
        if factor is None:
            raise NotFactorizedError(
                "solve called before a successful factorize")
        r = np.asarray(r, dtype=float)
        if r.shape != (self._size,):
            raise DimensionError("Right-hand side has shape %s, expected %s" %
                                 (r.shape, (self._size,)))

        if self.method == "lu":
            return factor.solve(r, trans="T" if transpose else "N")
        elif self.method == "dense":
            return la.lu_solve(factor, r, trans=1 if transpose else 0)

        op = factor[1] if transpose else factor[0]
        iter_lim = self.iter_lim or 10 * self._size
        if self.method == "lsqr":
            z = splinalg.lsqr(op, r, atol=self.atol, btol=self.btol,
                              iter_lim=iter_lim)[0]
        else:
            z = splinalg.lsmr(op, r, atol=self.atol, btol=self.btol,
                              maxiter=iter_lim)[0]
        residual = np.linalg.norm(op.matvec(z) - r)
        if residual > self.residual_tol * max(1.0, np.linalg.norm(r)):
            raise SingularSystemError(
                "%s stopped with residual %.3g" % (self.method, residual))
        return z
