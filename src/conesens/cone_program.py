import logging
import multiprocessing as mp
import warnings
from multiprocessing.pool import ThreadPool

import numpy as np
import scipy.sparse as sparse
from threadpoolctl import threadpool_limits

import conesens.cones as cone_lib
from conesens.derivative import derivative
from conesens.errors import SolverError
from conesens.linear_solver import DEFAULT_METHOD
from conesens.problem import OptimalPoint, ProblemData

log = logging.getLogger(__name__)


def clarabel_psd_permutation(dim, row_offset):
    """Row permutation taking one PSD block from SCS order (lower triangle,
    column-major) to Clarabel order (upper triangle, column-major).

    Entry k of the result is the SCS row holding Clarabel row
    `row_offset + k`.
    """
    position = np.zeros((dim, dim), dtype=int)
    col_idx, row_idx = np.triu_indices(dim)
    position[(row_idx, col_idx)] = np.arange(row_idx.size)
    # upper entry (i, j), ordered by column j, is the lower entry (j, i)
    j_idx, i_idx = np.tril_indices(dim)
    return row_offset + position[(j_idx, i_idx)]


def _split_free_rows(A, b, cone_dict):
    """Drops the rows of free cones, which constrain nothing."""
    blocks = cone_lib.parse_cone_dict(cone_dict)
    keep = np.ones(A.shape[0], dtype=bool)
    for block in blocks:
        if block.kind == cone_lib.FREE:
            keep[block.rows] = False
    cone_dict = {cone: sz for cone, sz in cone_dict.items()
                 if cone != cone_lib.FREE}
    if keep.all():
        return A, b, cone_dict, keep
    return A[keep], b[keep], cone_dict, keep


def solve_internal(A, b, c, cone_dict, solve_method=None,
                   warm_start=None, raise_on_error=True, **kwargs):
    """Solves the cone program with an external solver.

    Returns a dictionary with keys "x", "y", "s" and "info". The free cone
    is handled here; the solvers only see the rows of the other cones.

    Raises:
        SolverError: if the solver fails or the program is infeasible or
            unbounded (unless `raise_on_error` is False).
    """
    A = sparse.csc_matrix(A, dtype=float, copy=True)
    b = np.array(b, dtype=float)
    c = np.array(c, dtype=float)
    A_s, b_s, cone_dict_s, keep = _split_free_rows(A, b, cone_dict)

    if solve_method is None:
        psd_cone = (cone_lib.PSD in cone_dict_s) and \
            (cone_dict_s[cone_lib.PSD] != [])
        solve_method = "SCS" if psd_cone else "ECOS"
    solve_method = solve_method.upper()

    if solve_method == "SCS":
        result = _solve_scs(A_s, b_s, c, cone_dict_s, warm_start,
                            raise_on_error, **kwargs)
    elif solve_method == "ECOS":
        if warm_start is not None:
            raise ValueError("ECOS does not support warmstart.")
        result = _solve_ecos(A_s, b_s, c, cone_dict_s, **kwargs)
    elif solve_method == "CLARABEL":
        if warm_start is not None:
            raise ValueError(
                "Clarabel currently does not support warmstarting.")
        result = _solve_clarabel(A_s, b_s, c, cone_dict_s, **kwargs)
    else:
        raise ValueError("Solver %s not supported." % solve_method)

    if result.get("x") is not None and not keep.all():
        x = result["x"]
        y = np.zeros(b.size)
        s = b - A @ x
        y[keep] = result["y"]
        s[keep] = result["s"]
        result["y"], result["s"] = y, s
    return result


def _solve_scs(A, b, c, cone_dict, warm_start, raise_on_error, **kwargs):
    import scs

    if "eps" in kwargs:  # eps replaced by eps_abs, eps_rel
        kwargs["eps_abs"] = kwargs["eps"]
        kwargs["eps_rel"] = kwargs["eps"]
        del kwargs["eps"]

    data = {
        "A": A,
        "b": b,
        "c": c,
    }
    if warm_start is not None:
        data["x"] = warm_start[0]
        data["y"] = warm_start[1]
        data["s"] = warm_start[2]

    kwargs.setdefault("verbose", False)
    result = scs.solve(data, cone_dict, **kwargs)

    status = result["info"]["status"]
    inaccurate_status = {"Solved/Inaccurate",
                         "solved (inaccurate - reached max_iters)",
                         "solved (inaccurate - reached time_limit_secs)"}
    if status in inaccurate_status and "acceleration_lookback" not in kwargs:
        # anderson acceleration is sometimes unstable
        log.debug("retrying SCS without acceleration after status %s",
                  status)
        result = scs.solve(
            data, cone_dict, acceleration_lookback=0, **kwargs)
        status = result["info"]["status"]

    if status in inaccurate_status:
        warnings.warn("Solved/Inaccurate.")
    elif status.lower() != "solved":
        if raise_on_error:
            raise SolverError("Solver scs returned status %s" % status)
        result["x"] = result["y"] = result["s"] = None
    return result


def _solve_ecos(A, b, c, cone_dict, **kwargs):
    import ecos

    if (cone_lib.PSD in cone_dict) and (cone_dict[cone_lib.PSD] != []):
        raise ValueError("PSD cone not supported by ECOS.")
    len_eq = cone_dict.get(cone_lib.ZERO, 0)
    G_ecos = sparse.csc_matrix(A[len_eq:]) if A.shape[0] > len_eq else None
    H_ecos = b[len_eq:] if b.size > len_eq else None
    A_ecos = sparse.csc_matrix(A[:len_eq]) if len_eq > 0 else None
    B_ecos = b[:len_eq] if len_eq > 0 else None
    if A_ecos is not None and A_ecos.nnz == 0:
        raise ValueError("ECOS cannot handle sparse data with nnz == 0.")

    cone_dict_ecos = {}
    if cone_lib.POS in cone_dict:
        cone_dict_ecos["l"] = cone_dict[cone_lib.POS]
    if cone_lib.SOC in cone_dict:
        cone_dict_ecos["q"] = list(cone_dict[cone_lib.SOC])

    kwargs.setdefault("verbose", False)
    solution = ecos.solve(c, G_ecos, H_ecos, cone_dict_ecos, A_ecos, B_ecos,
                          **kwargs)
    status = solution["info"]["exitFlag"]
    STATUS_LOOKUP = {0: "Optimal", 1: "Infeasible", 2: "Unbounded",
                     10: "Optimal Inaccurate", 11: "Infeasible Inaccurate",
                     12: "Unbounded Inaccurate"}
    if status == 10:
        warnings.warn("Solved/Inaccurate.")
    elif status < 0:
        raise SolverError("Solver ecos errored.")
    if status not in [0, 10]:
        raise SolverError("Solver ecos returned status %s" %
                          STATUS_LOOKUP[status])

    x = solution["x"]
    y = np.append(solution["y"], solution["z"])
    # Convert ECOS info into SCS info
    ECOS2SCS_STATUS_MAP = {0: "Solved", 10: "Solved/Inaccurate"}
    return {
        "x": x,
        "y": y,
        "s": b - A @ x,
        "info": {"status": ECOS2SCS_STATUS_MAP[status],
                 "solveTime": solution["info"]["timing"]["tsolve"],
                 "setupTime": solution["info"]["timing"]["tsetup"],
                 "iter": solution["info"]["iter"],
                 "pobj": solution["info"]["pcost"]},
    }


def _solve_clarabel(A, b, c, cone_dict, **kwargs):
    import clarabel

    # Clarabel stores PSD blocks as upper triangles, so PSD rows of A and b
    # are permuted on the way in and y, s on the way out.
    cones = []
    perm = np.arange(b.size)
    for block in cone_lib.parse_cone_dict(cone_dict):
        if block.kind == cone_lib.ZERO:
            cones.append(clarabel.ZeroConeT(block.dim))
        elif block.kind == cone_lib.POS:
            cones.append(clarabel.NonnegativeConeT(block.dim))
        elif block.kind == cone_lib.SOC:
            cones.append(clarabel.SecondOrderConeT(block.dim))
        elif block.kind == cone_lib.PSD:
            cones.append(clarabel.PSDTriangleConeT(block.dim))
            perm[block.rows] = clarabel_psd_permutation(block.dim,
                                                        block.start)

    kwargs.setdefault("verbose", False)
    settings = clarabel.DefaultSettings()
    for key, value in kwargs.items():
        setattr(settings, key, value)

    P = sparse.csc_matrix((c.size, c.size))
    solver = clarabel.DefaultSolver(P, c, sparse.csc_matrix(A[perm]),
                                    b[perm], cones, settings)
    solution = solver.solve()

    CLARABEL2SCS_STATUS_MAP = {
        "Solved": "Solved",
        "PrimalInfeasible": "Infeasible",
        "DualInfeasible": "Unbounded",
        "AlmostSolved": "Solved/Inaccurate",
        "AlmostPrimalInfeasible": "Infeasible/Inaccurate",
        "AlmostDualInfeasible": "Unbounded/Inaccurate",
    }
    status = CLARABEL2SCS_STATUS_MAP.get(str(solution.status), "Failure")
    if status == "Solved/Inaccurate":
        warnings.warn("Solved/Inaccurate.")
    elif status != "Solved":
        raise SolverError("Solver clarabel returned status %s" % status)

    y = np.empty(b.size)
    s = np.empty(b.size)
    y[perm] = np.array(solution.z)
    s[perm] = np.array(solution.s)
    return {
        "x": np.array(solution.x),
        "y": y,
        "s": s,
        "info": {"status": status,
                 "solveTime": solution.solve_time,
                 "setupTime": -1,
                 "iter": solution.iterations,
                 "pobj": solution.obj_val},
    }


def solve_and_derivative(A, b, c, cone_dict, warm_start=None,
                         mode=DEFAULT_METHOD, solve_method=None, **kwargs):
    """Solves a cone program, returns its derivative as an abstract linear map.

    This function solves a convex cone program, with primal-dual problems
        min.        c^T x                  min.        b^Ty
        subject to  Ax + s = b             subject to  A^Ty + c = 0
                    s \\in K                            y \\in K^*

    The problem data A, b, and c correspond to the arguments `A`, `b`, and `c`,
    and the convex cone `K` corresponds to `cone_dict`; x and s are the primal
    variables, and y is the dual variable.

    Args:
      A: A sparse SciPy matrix in CSC format; rows are laid out by cone in
        the order of `cones.CONES`. PSD matrix variables are vectorized by
        scaling the off-diagonal entries by sqrt(2) and stacking the lower
        triangular part in column-major order.
      b: A NumPy array representing the offset.
      c: A NumPy array representing the objective function.
      cone_dict: A dictionary with keys corresponding to cones, values
          corresponding to their dimensions (see `cones.parse_cone_dict`).
      warm_start: (optional) A tuple (x, y, s) at which to warm-start SCS.
      mode: (optional) LinearSolver method for the derivative, one of
          ["lu", "dense", "lsqr", "lsmr"].
      solve_method: (optional) Name of solver to use; SCS, ECOS, or Clarabel.
      kwargs: (optional) Keyword arguments to send to the solver; a
          "derivative_kwargs" entry is sent to the LinearSolver instead.

    Returns:
        x, y, s: the solution.
        derivative: callable D(dA, db, dc) -> dx, dy, ds.
        adjoint_derivative: callable DT(dx, dy, ds) -> dA, db, dc.
    Raises:
        SolverError: if the cone program is infeasible or unbounded.
    """
    derivative_kwargs = kwargs.pop("derivative_kwargs", {})
    problem = ProblemData(A, b, c, cone_dict)
    result = solve_internal(problem.A, problem.b, problem.c, cone_dict,
                            solve_method=solve_method, warm_start=warm_start,
                            **kwargs)
    point = OptimalPoint(result["x"], result["y"], result["s"])
    D, DT = derivative(problem, point, mode=mode, **derivative_kwargs)
    return result["x"], result["y"], result["s"], D, DT


def solve_and_derivative_wrapper(A, b, c, cone_dict, warm_start, mode, kwargs):
    """A wrapper around solve_and_derivative for the batch function."""
    return solve_and_derivative(
        A, b, c, cone_dict, warm_start=warm_start, mode=mode, **kwargs)


def solve_and_derivative_batch(As, bs, cs, cone_dicts, n_jobs_forward=-1,
                               n_jobs_backward=-1, mode=DEFAULT_METHOD,
                               warm_starts=None, **kwargs):
    """
    Solves a batch of cone programs and returns a function that
    performs a batch of derivatives. Uses a ThreadPool to perform
    operations across the batch in parallel.

    For more information on the arguments and return values,
    see the docstring for `solve_and_derivative` function.

    Args:
        As - A list of A matrices.
        bs - A list of b arrays.
        cs - A list of c arrays.
        cone_dicts - A list of dictionaries describing the cone.
        n_jobs_forward - Number of jobs to use in the forward pass. n_jobs_forward = 1
            means serial and n_jobs_forward = -1 defaults to the number of CPUs (default=-1).
        n_jobs_backward - Number of jobs to use in the backward pass. n_jobs_backward = 1
            means serial and n_jobs_backward = -1 defaults to the number of CPUs (default=-1).
        mode - LinearSolver method.
        warm_starts - A list of warm starts.
        kwargs - kwargs sent to the solver.

    Returns:
        xs, ys, ss: lists of solutions.
        D_batch: callable D_batch(dAs, dbs, dcs) -> dxs, dys, dss
        DT_batch: callable DT_batch(dxs, dys, dss) -> dAs, dbs, dcs
    """
    batch_size = len(As)
    if warm_starts is None:
        warm_starts = [None] * batch_size
    if n_jobs_forward == -1:
        n_jobs_forward = mp.cpu_count()
    if n_jobs_backward == -1:
        n_jobs_backward = mp.cpu_count()
    n_jobs_forward = max(1, min(batch_size, n_jobs_forward))
    n_jobs_backward = max(1, min(batch_size, n_jobs_backward))

    args = [(A, b, c, cone_dict, warm_start, mode, dict(kwargs))
            for A, b, c, cone_dict, warm_start in
            zip(As, bs, cs, cone_dicts, warm_starts)]
    if n_jobs_forward == 1:
        results = [solve_and_derivative_wrapper(*arg) for arg in args]
    else:
        pool = ThreadPool(processes=n_jobs_forward)
        with threadpool_limits(limits=1):
            results = pool.starmap(solve_and_derivative_wrapper, args)
        pool.close()
    xs, ys, ss, Ds, DTs = (list(r) for r in zip(*results)) if results \
        else ([], [], [], [], [])

    def _batch(fns, *lists):
        def apply(i):
            return fns[i](*(lst[i] for lst in lists))
        if n_jobs_backward == 1:
            out = [apply(i) for i in range(batch_size)]
        else:
            pool = ThreadPool(processes=n_jobs_backward)
            out = pool.map(apply, range(batch_size))
            pool.close()
        return tuple(list(r) for r in zip(*out)) if out else ([], [], [])

    def D_batch(dAs, dbs, dcs):
        return _batch(Ds, dAs, dbs, dcs)

    def DT_batch(dxs, dys, dss):
        return _batch(DTs, dxs, dys, dss)

    return xs, ys, ss, D_batch, DT_batch
