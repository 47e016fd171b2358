from collections import namedtuple

import numpy as np
import scipy.sparse as sparse
from scipy.sparse import linalg as splinalg

from conesens.errors import DimensionError, UnsupportedConeError

ZERO = "z"
FREE = "f"
POS = "l"
SOC = "q"
PSD = "s"

# The ordering of CONES matches SCS, with the free cone after the zero cone.
CONES = [ZERO, FREE, POS, SOC, PSD]

# Cones whose blocks are given by a list of sizes in a cone dictionary.
LIST_CONES = (SOC, PSD)

_DUAL = {
    ZERO: FREE,
    FREE: ZERO,
    POS: POS,
    SOC: SOC,
    PSD: PSD,
}


def dual_cone(cone):
    """Returns the kind of the dual cone of `cone`."""
    try:
        return _DUAL[cone]
    except KeyError:
        raise UnsupportedConeError(cone) from None


def vec_psd_dim(dim):
    return int(dim * (dim + 1) / 2)


def psd_dim(size):
    return int(np.sqrt(2 * size))


def block_size(cone, dim):
    """Number of rows taken by a block of kind `cone` with dimension `dim`."""
    if cone == PSD:
        return vec_psd_dim(dim)
    elif cone in _DUAL:
        return dim
    raise UnsupportedConeError(cone)


class ConeBlock(namedtuple("ConeBlock", ["kind", "dim", "start", "stop"])):
    """One cone of the product cone, occupying rows [start, stop).

    `dim` is the cone's own dimension parameter: the number of rows for the
    zero, free, nonnegative and second-order cones, and the side length of
    the matrix for the PSD cone.
    """
    __slots__ = ()

    @property
    def rows(self):
        return slice(self.start, self.stop)

    @property
    def size(self):
        return self.stop - self.start


def make_blocks(kinds_and_dims, offset=0):
    """Lays out (kind, dim) pairs one after another starting at `offset`."""
    blocks = []
    for kind, dim in kinds_and_dims:
        size = block_size(kind, dim)
        blocks.append(ConeBlock(kind, dim, offset, offset + size))
        offset += size
    return blocks


def _is_empty(sz):
    sz = sz if isinstance(sz, (tuple, list)) else (sz,)
    return sum(sz) == 0


def parse_cone_dict(cone_dict):
    """Parses an SCS-style cone dictionary into an ordered list of blocks.

    The zero, free and nonnegative cones take an integer (their row count);
    the second-order and PSD cones take a list of dimensions. Empty entries
    are skipped, also for cones this module does not support.
    """
    unknown = [cone for cone, sz in cone_dict.items()
               if cone not in CONES and not _is_empty(sz)]
    if unknown:
        raise UnsupportedConeError(unknown[0])
    kinds_and_dims = []
    for cone in CONES:
        if cone not in cone_dict:
            continue
        sz = cone_dict[cone]
        sz = sz if isinstance(sz, (tuple, list)) else (sz,)
        for dim in sz:
            dim = int(dim)
            if dim < 0:
                raise DimensionError(
                    "Cone %r has negative dimension %d" % (cone, dim))
            if dim > 0:
                kinds_and_dims.append((cone, dim))
    return make_blocks(kinds_and_dims)


def to_cone_dict(blocks):
    """Inverse of `parse_cone_dict`; blocks must be laid out in SCS order."""
    order = [CONES.index(block.kind) if block.kind in CONES else None
             for block in blocks]
    if None in order:
        raise UnsupportedConeError(blocks[order.index(None)].kind)
    if order != sorted(order):
        raise ValueError("Cone blocks are not in solver order %s" % CONES)
    cone_dict = {}
    for block in blocks:
        if block.kind in LIST_CONES:
            cone_dict.setdefault(block.kind, []).append(block.dim)
        else:
            cone_dict[block.kind] = cone_dict.get(block.kind, 0) + block.dim
    return cone_dict


def unvec_symm(x, dim):
    """Returns a dim-by-dim symmetric matrix corresponding to `x`.

    `x` is a vector of length dim*(dim + 1)/2, corresponding to a symmetric
    matrix; the correspondence is as in SCS.
    X = [ X11 X12 ... X1k
          X21 X22 ... X2k
          ...
          Xk1 Xk2 ... Xkk ],
    where
    vec(X) = (X11, sqrt(2)*X21, ..., sqrt(2)*Xk1, X22, sqrt(2)*X32, ..., Xkk)
    """
    X = np.zeros((dim, dim))
    # triu_indices gets indices of upper triangular matrix in row-major order
    col_idx, row_idx = np.triu_indices(dim)
    X[(row_idx, col_idx)] = x
    X = X + X.T
    X /= np.sqrt(2)
    X[np.diag_indices(dim)] = np.diagonal(X) * np.sqrt(2) / 2
    return X


def vec_symm(X):
    """Returns a vectorized representation of a symmetric matrix `X`.

    Vectorization (including scaling) as per SCS.
    vec(X) = (X11, sqrt(2)*X21, ..., sqrt(2)*Xk1, X22, sqrt(2)*X32, ..., Xkk)
    """
    X = X.copy()
    X *= np.sqrt(2)
    X[np.diag_indices(X.shape[0])] = np.diagonal(X) / np.sqrt(2)
    col_idx, row_idx = np.triu_indices(X.shape[0])
    return X[(row_idx, col_idx)]


def _soc_region(t, norm_z):
    """Which piece of the SOC projection applies: 1 inside, -1 polar, 0 else."""
    if norm_z <= t or np.isclose(norm_z, t, atol=1e-8):
        return 1
    elif norm_z <= -t:
        return -1
    return 0


def _proj(x, cone, dual=False):
    """Returns the projection of x onto a cone or its dual cone."""
    if dual:
        cone = dual_cone(cone)

    if cone == ZERO:
        return np.zeros(x.shape)
    elif cone == FREE:
        return np.array(x, dtype=float)
    elif cone == POS:
        return np.maximum(x, 0)
    elif cone == SOC:
        t = x[0]
        z = x[1:]
        norm_z = np.linalg.norm(z, 2)
        region = _soc_region(t, norm_z)
        if region == 1:
            return np.array(x, dtype=float)
        elif region == -1:
            return np.zeros(x.shape)
        else:
            return 0.5 * (1 + t / norm_z) * np.append(norm_z, z)
    elif cone == PSD:
        dim = psd_dim(x.size)
        X = unvec_symm(x, dim)
        lambd, Q = np.linalg.eigh(X)
        return vec_symm(Q @ sparse.diags(np.maximum(lambd, 0)) @ Q.T)
    else:
        raise UnsupportedConeError(cone)


def pi(x, cones, dual=False):
    """Projects x onto product of cones (or their duals)
    Args:
        x: NumPy array (with PSD data formatted in SCS convention)
        cones: list of ConeBlock
        dual: whether to project onto the dual cone
    Returns:
        NumPy array that is the projection of `x` onto the (dual) cones
    """
    projection = np.zeros(x.shape)
    for block in cones:
        projection[block.rows] = _proj(x[block.rows], block.kind, dual=dual)
    return projection


def _soc_dproj_dense(x):
    n = x.size
    t = x[0]
    z = x[1:]
    norm_z = np.linalg.norm(z, 2)
    region = _soc_region(t, norm_z)
    if region == 1:
        return np.eye(n)
    elif region == -1:
        return np.zeros((n, n))
    unit = z / norm_z
    D = np.empty((n, n))
    D[0, 0] = 1.0
    D[0, 1:] = unit
    D[1:, 0] = unit
    D[1:, 1:] = ((1 + t / norm_z) * np.eye(n - 1)
                 - (t / norm_z) * np.outer(unit, unit))
    return 0.5 * D


def _psd_dproj_operator(x):
    """Derivative of the PSD projection at `x`, applied via eigenvectors.

    For X = Q diag(lambda) Q^T, the derivative maps dX to
    Q (B o (Q^T dX Q)) Q^T with B_ij the divided difference of max(., 0)
    at (lambda_i, lambda_j). The map is self-adjoint.
    """
    size = x.size
    dim = psd_dim(size)
    lambd, Q = np.linalg.eigh(unvec_symm(x, dim))
    pos = lambd > 0
    lambd_pos = np.maximum(lambd, 0)
    with np.errstate(divide="ignore", invalid="ignore"):
        B = np.subtract.outer(lambd_pos, lambd_pos) / \
            np.subtract.outer(lambd, lambd)
    B[np.outer(pos, pos)] = 1.0
    B[np.outer(~pos, ~pos)] = 0.0

    def matvec(dx):
        dX = unvec_symm(np.ravel(dx), dim)
        return vec_symm(Q @ (B * (Q.T @ dX @ Q)) @ Q.T)

    return splinalg.LinearOperator((size, size), matvec=matvec,
                                   rmatvec=matvec, dtype=float)


def _dproj(x, cone, dual=False):
    """Returns the derivative of the projection onto a cone (or its dual)
    at `x`, as a LinearOperator.

    Mask cones (zero, free, nonnegative) are represented by a sparse
    diagonal of 0s and 1s.
    """
    if dual:
        cone = dual_cone(cone)

    if cone in (ZERO, FREE, POS):
        return splinalg.aslinearoperator(_mask_dproj(x, cone))
    elif cone == SOC:
        return splinalg.aslinearoperator(_soc_dproj_dense(x))
    elif cone == PSD:
        return _psd_dproj_operator(x)
    else:
        raise UnsupportedConeError(cone)


def _mask_dproj(x, cone):
    if cone == ZERO:
        mask = np.zeros(x.size)
    elif cone == FREE:
        mask = np.ones(x.size)
    else:
        mask = (x > 0).astype(float)
    return sparse.diags(mask, format="csc")


def _dproj_matrix(x, cone, dual=False):
    """Same as `_dproj`, but returns a sparse matrix."""
    if dual:
        cone = dual_cone(cone)

    if cone in (ZERO, FREE, POS):
        return _mask_dproj(x, cone)
    elif cone == SOC:
        return sparse.csc_matrix(_soc_dproj_dense(x))
    elif cone == PSD:
        op = _psd_dproj_operator(x)
        return sparse.csc_matrix(op.matmat(np.eye(x.size)))
    else:
        raise UnsupportedConeError(cone)


def dpi(x, cones, dual=False):
    """Derivative of the projection onto the product cone, as a block
    diagonal LinearOperator.
    """
    ops = [_dproj(x[block.rows], block.kind, dual=dual) for block in cones]
    return as_block_diag_linear_operator(ops)


def dpi_matrix(x, cones, dual=False):
    """Derivative of the projection onto the product cone, as a sparse
    block diagonal matrix (CSC)."""
    if not cones:
        return sparse.csc_matrix((0, 0))
    return sparse.block_diag(
        [_dproj_matrix(x[block.rows], block.kind, dual=dual)
         for block in cones], format="csc")


def as_block_diag_linear_operator(matrices):
    """Block diag of SciPy sparse matrices (or linear operators)."""
    linear_operators = [splinalg.aslinearoperator(
        op) if not isinstance(op, splinalg.LinearOperator) else op
        for op in matrices]
    num_operators = len(linear_operators)
    nrows = [op.shape[0] for op in linear_operators]
    ncols = [op.shape[1] for op in linear_operators]
    m, n = sum(nrows), sum(ncols)
    row_indices = np.append(0, np.cumsum(nrows))
    col_indices = np.append(0, np.cumsum(ncols))

    def matvec(x):
        x = np.ravel(x)
        output = np.zeros(m)
        for i, op in enumerate(linear_operators):
            z = x[col_indices[i]:col_indices[i + 1]]
            output[row_indices[i]:row_indices[i + 1]] = op.matvec(z)
        return output

    def rmatvec(y):
        y = np.ravel(y)
        output = np.zeros(n)
        for i in range(num_operators):
            z = y[row_indices[i]:row_indices[i + 1]]
            output[col_indices[i]:col_indices[i + 1]] = \
                linear_operators[i].rmatvec(z)
        return output

    return splinalg.LinearOperator((m, n), matvec=matvec, rmatvec=rmatvec,
                                   dtype=float)


def transpose_linear_operator(op):
    return splinalg.LinearOperator(
        (op.shape[1], op.shape[0]), matvec=op.rmatvec, rmatvec=op.matvec,
        dtype=float)
