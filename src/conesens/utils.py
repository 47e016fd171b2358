import numpy as np
from scipy import sparse

import conesens.cones as cone_lib
from conesens.cone_program import solve_internal
from conesens.derivative import check_perturbation


def scs_data_from_cvxpy_problem(problem):
    import cvxpy as cp
    data = problem.get_problem_data(cp.SCS)[0]
    cone_dims = cp.reductions.solvers.conic_solvers.scs_conif.dims_to_solver_dict(data[
                                                                                  "dims"])
    return data["A"], data["b"], data["c"], cone_dims


def least_squares_eq_scs_data(m, n, seed=0):
    """Generate a conic problem with unique solution."""
    import cvxpy as cp
    np.random.seed(seed)
    assert m >= n
    x = cp.Variable(n)
    b = np.random.randn(m)
    A = np.random.randn(m, n)
    assert np.linalg.matrix_rank(A) == n
    objective = cp.pnorm(A @ x - b, 1)
    constraints = [x >= 0, cp.sum(x) == 1.0]
    problem = cp.Problem(cp.Minimize(objective), constraints)
    return scs_data_from_cvxpy_problem(problem)


def get_random_like(A, randomness):
    """Generate a random sparse matrix with the same sparsity
    pattern as A, using the function `randomness`.

    `randomness` is a function that returns a random vector
    with a prescribed length.
    """
    rows, cols = A.nonzero()
    values = randomness(rows.size)
    return sparse.csc_matrix((values, (rows, cols)), shape=A.shape)


def _equality_count(z, cones):
    """Number of linear conditions the solution at `z` places on x.

    With s = Pi_K(z), this is the codimension of the face of K containing s
    within each block, i.e. the count a regular solution needs to pin x.
    """
    count = 0
    for block in cones:
        zb = z[block.rows]
        if block.kind == cone_lib.ZERO:
            count += block.size
        elif block.kind == cone_lib.POS:
            count += int(np.sum(zb < 0))
        elif block.kind == cone_lib.SOC:
            region = cone_lib._soc_region(zb[0], np.linalg.norm(zb[1:]))
            if region == -1:
                count += block.size
            elif region == 0:
                count += 1
        elif block.kind == cone_lib.PSD:
            rank = int(np.sum(np.linalg.eigvalsh(
                cone_lib.unvec_symm(zb, block.dim)) > 0))
            count += block.size - cone_lib.vec_psd_dim(rank)
    return count


def random_cone_prog(cone_dict, max_tries=100):
    """Returns the data and solution of a random cone program whose solution
    is regular.

    A random z fixes s = Pi_K(z) and y = s - z, so that s and y are
    complementary. The number of variables is chosen to match the number of
    equations the active faces impose on x, then A, x, b and c are drawn so
    that (x, y, s) is optimal.

    Returns:
        A (CSC), b, c, and the solution (x, y, s).
    """
    cones = cone_lib.parse_cone_dict(cone_dict)
    m = sum(block.size for block in cones)
    for _ in range(max_tries):
        z = np.random.randn(m)
        n = _equality_count(z, cones)
        if n > 0:
            break
    else:
        raise ValueError("Could not draw a program with at least one variable")
    s_star = cone_lib.pi(z, cones, dual=False)
    y_star = s_star - z
    A = sparse.csc_matrix(np.random.randn(m, n))
    x_star = np.random.randn(n)
    b = A @ x_star + s_star
    c = -A.T @ y_star
    return A, b, c, (x_star, y_star, s_star)


def perturbed_solution(problem, tau, dA=None, db=None, dc=None,
                       solve_method=None, **kwargs):
    """Solves `problem` with data (A + tau dA, b + tau db, c + tau dc)."""
    dA, db, dc = check_perturbation(problem.shape, dA, db, dc)
    result = solve_internal(problem.A + tau * dA, problem.b + tau * db,
                            problem.c + tau * dc, problem.cone_dict(),
                            solve_method=solve_method, **kwargs)
    return result["x"], result["y"], result["s"]


def finite_difference(problem, tau, dA=None, db=None, dc=None,
                      solve_method=None, **kwargs):
    """Central finite difference of the solution map in direction
    (dA, db, dc), by re-solving the program at +tau and -tau."""
    right = perturbed_solution(problem, tau, dA, db, dc,
                               solve_method=solve_method, **kwargs)
    left = perturbed_solution(problem, -tau, dA, db, dc,
                              solve_method=solve_method, **kwargs)
    return tuple((r - l) / (2 * tau) for r, l in zip(right, left))
