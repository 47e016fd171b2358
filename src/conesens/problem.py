"""Problem data and solution points of a cone program.

Both objects are read-only snapshots: arrays are copied on construction and
flagged non-writeable, and the constraint matrix is stored as CSC with
explicit zeros removed.
"""
import numpy as np
import scipy.sparse as sparse

import conesens.cones as cone_lib
from conesens.errors import DimensionError


def _frozen(array, name, shape=None):
    array = np.array(array, dtype=float)
    if array.ndim != 1:
        raise DimensionError("%s must be one-dimensional, got shape %s" %
                             (name, array.shape))
    if shape is not None and array.shape != shape:
        raise DimensionError("%s has shape %s, expected %s" %
                             (name, array.shape, shape))
    array.flags.writeable = False
    return array


def check_partition(cones, m):
    """Checks that the cone blocks cover the rows [0, m) exactly, in order."""
    offset = 0
    for block in cones:
        if block.start != offset:
            kind = "gap" if block.start > offset else "overlap"
            raise DimensionError(
                "Cone block %r leaves a %s at row %d" % (block, kind, offset))
        if block.stop < block.start:
            raise DimensionError("Cone block %r has a negative size" %
                                 (block,))
        expected = cone_lib.block_size(block.kind, block.dim)
        if block.size != expected:
            raise DimensionError(
                "Cone block %r spans %d rows, expected %d" %
                (block, block.size, expected))
        offset = block.stop
    if offset != m:
        raise DimensionError(
            "Cone blocks cover %d rows, but A has %d rows" % (offset, m))


class ProblemData(object):
    """A cone program in SCS form,

        minimize    c^T x
        subject to  Ax + s = b
                    s in K,

    where K is the product of the blocks in `cones`.

    Args:
        A: (m, n) SciPy sparse matrix or NumPy array.
        b: length-m NumPy array.
        c: length-n NumPy array.
        cones: either a list of ConeBlock partitioning the m rows, or an
            SCS-style cone dictionary (see `cones.parse_cone_dict`).
    """

    def __init__(self, A, b, c, cones):
        A = sparse.csc_matrix(A, dtype=float, copy=True)
        if np.isnan(A.data).any():
            raise RuntimeError("Found a NaN in A.")
        A.sum_duplicates()
        A.eliminate_zeros()
        A.data.flags.writeable = False
        m, n = A.shape
        self._A = A
        self._b = _frozen(b, "b", (m,))
        self._c = _frozen(c, "c", (n,))

        if isinstance(cones, dict):
            cones = cone_lib.parse_cone_dict(cones)
        cones = tuple(cone_lib.ConeBlock(*block) for block in cones)
        check_partition(cones, m)
        self._cones = cones

    @property
    def A(self):
        return self._A

    @property
    def b(self):
        return self._b

    @property
    def c(self):
        return self._c

    @property
    def cones(self):
        return self._cones

    @property
    def m(self):
        return self._A.shape[0]

    @property
    def n(self):
        return self._A.shape[1]

    @property
    def shape(self):
        return self._A.shape

    def cone_dict(self):
        """SCS-style cone dictionary; requires blocks in solver order."""
        return cone_lib.to_cone_dict(self._cones)

    def __repr__(self):
        return "ProblemData(m=%d, n=%d, cones=%d blocks)" % (
            self.m, self.n, len(self._cones))


class OptimalPoint(object):
    """Primal-dual solution (x, y, s) of a cone program, as returned by a
    conic solver. It is taken as given; `residuals` is only a diagnostic.
    """

    def __init__(self, x, y, s):
        self._x = _frozen(x, "x")
        self._y = _frozen(y, "y")
        self._s = _frozen(s, "s", self._y.shape)

    @property
    def x(self):
        return self._x

    @property
    def y(self):
        return self._y

    @property
    def s(self):
        return self._s

    def check_compatible(self, problem):
        m, n = problem.shape
        if self._x.shape != (n,):
            raise DimensionError("x has shape %s, expected %s" %
                                 (self._x.shape, (n,)))
        if self._y.shape != (m,):
            raise DimensionError("y has shape %s, expected %s" %
                                 (self._y.shape, (m,)))

    def residuals(self, problem):
        """Returns the primal, dual and complementarity residuals at this
        point, together with the distance of s to K and of y to K^*."""
        self.check_compatible(problem)
        x, y, s = self._x, self._y, self._s
        return {
            "primal": np.linalg.norm(problem.A @ x + s - problem.b),
            "dual": np.linalg.norm(problem.A.T @ y + problem.c),
            "gap": abs(s @ y),
            "s_cone": np.linalg.norm(
                s - cone_lib.pi(s, problem.cones, dual=False)),
            "y_cone": np.linalg.norm(
                y - cone_lib.pi(y, problem.cones, dual=True)),
        }

    def __repr__(self):
        return "OptimalPoint(n=%d, m=%d)" % (self._x.size, self._y.size)
