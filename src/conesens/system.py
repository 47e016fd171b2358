"""Derivative of the optimality conditions of a cone program at a solution.

Writing v = y - s, a point (x, y, s) solves the primal-dual pair if and
only if y = Pi(v) and s = Pi(v) - v, with Pi the projection onto K^*, and
(x, v) is a zero of the residual

    F(x, v) = [ A^T Pi(v) + c        ]
              [ A x + Pi(v) - v - b  ].

This is the self-dual embedding residual at w = 1, without its duality gap
row (which is implied by the other two at a solution). Unlike the
homogeneous form, whose Jacobian always annihilates the solution ray, the
Jacobian

    M = [ 0   A^T D  ]        D = DPi(v),
        [ A   D - I  ]

is nonsingular at regular solutions and can be factorized directly. For
background see http://web.stanford.edu/~boyd/papers/diff_cone_prog.html.
"""
import numpy as np
import scipy.sparse as sparse
from scipy.sparse import linalg as splinalg

import conesens.cones as cone_lib


class SensitivitySystem(object):
    """The linear system shared by every derivative query at one point.

    Attributes:
        M: the (n + m)-square Jacobian of F, a CSC matrix, a NumPy array
            (built with `dense=True`) or a LinearOperator (`operator=True`).
        D_proj_dual_cone: derivative of the projection onto K^* at v, as a
            sparse block diagonal matrix or a LinearOperator.
    """

    def __init__(self, problem, point, M, D_proj_dual_cone):
        self.problem = problem
        self.point = point
        self.M = M
        self.D_proj_dual_cone = D_proj_dual_cone

    @property
    def size(self):
        return self.M.shape[0]

    def split(self, z):
        return np.split(z, [self.problem.n])

    def data_rhs(self, dA, db, dc):
        """Minus the derivative of F in the data, applied to (dA, db, dc)."""
        x, y = self.point.x, self.point.y
        return -np.concatenate([dA.T @ y + dc, dA @ x - db])

    def data_adjoint(self, r):
        """Adjoint of `data_rhs`: maps r to dense (dA, db, dc)."""
        x, y = self.point.x, self.point.y
        rx, rv = self.split(r)
        dA = -(np.outer(y, rx) + np.outer(rv, x))
        return dA, rv, -rx

    def solution_map(self, dz):
        """Maps a step (dx, dv) to (dx, dy, ds)."""
        dx, dv = self.split(dz)
        dy = self.D_proj_dual_cone @ dv
        return dx, dy, dy - dv

    def solution_map_adjoint(self, dx, dy, ds):
        """Adjoint of `solution_map`."""
        return np.concatenate(
            [dx, self.D_proj_dual_cone.T @ (dy + ds) - ds])


def _operator_form(A, D):
    """M as a LinearOperator, applied without assembling A^T D."""
    m, n = A.shape

    def matvec(z):
        dx, dv = np.split(np.ravel(z), [n])
        D_dv = D.matvec(dv)
        return np.concatenate([A.T @ D_dv, A @ dx + D_dv - dv])

    def rmatvec(r):
        rx, rv = np.split(np.ravel(r), [n])
        return np.concatenate([A.T @ rv, D.rmatvec(A @ rx + rv) - rv])

    return splinalg.LinearOperator((n + m, n + m), matvec=matvec,
                                   rmatvec=rmatvec, dtype=float)


def build_system(problem, point, dense=False, operator=False):
    """Builds the derivative system of `problem` at `point`.

    Cone structure enters only through D, assembled block-diagonally from
    the per-cone projection derivatives at the blocks' row ranges. With
    `operator=True`, D and M are LinearOperators and nothing is assembled;
    this form is for the iterative solvers.

    Raises:
        DimensionError: if `point` does not match `problem`.
        UnsupportedConeError: if a cone block has no projection derivative.
    """
    point.check_compatible(problem)
    A = problem.A
    m, n = A.shape

    v = point.y - point.s
    if operator:
        D = cone_lib.dpi(v, problem.cones, dual=True)
        return SensitivitySystem(problem, point, _operator_form(A, D), D)

    D = cone_lib.dpi_matrix(v, problem.cones, dual=True)
    M = sparse.bmat([
        [sparse.csc_matrix((n, n)), A.T @ D],
        [A, D - sparse.eye(m, format="csc")],
    ], format="csc")
    if dense:
        M = M.toarray()

    return SensitivitySystem(problem, point, M, D)
