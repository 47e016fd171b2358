import cvxpy as cp
import conesens
import numpy as np

import time


def randn_symm(n):
    A = np.random.randn(n, n)
    return (A + A.T) / 2


def randn_psd(n):
    A = 1. / 10 * np.random.randn(n, n)
    return A@A.T


def main(n=3, p=3):
    # Generate problem data
    C = randn_psd(n)
    As = [randn_symm(n) for _ in range(p)]
    Bs = np.random.randn(p)

    # Extract problem data using cvxpy
    X = cp.Variable((n, n), PSD=True)
    objective = cp.trace(C@X)
    constraints = [cp.trace(As[i]@X) == Bs[i] for i in range(p)]
    prob = cp.Problem(cp.Minimize(objective), constraints)
    A, b, c, cone_dims = conesens.utils.scs_data_from_cvxpy_problem(prob)

    # Print problem size
    print(f"""n={n}, p={p}, A.shape={A.shape}, nnz in A={A.nnz}, system={A.shape[0] + A.shape[1]}x{A.shape[0] + A.shape[1]}""")

    # Compute solution
    start = time.perf_counter()
    result = conesens.solve_internal(A, b, c, cone_dims, solve_method="Clarabel")
    end = time.perf_counter()
    print("Compute solution: %.2f s." % (end - start))

    problem = conesens.ProblemData(A, b, c, cone_dims)
    point = conesens.OptimalPoint(result["x"], result["y"], result["s"])
    for mode in ["lu", "dense"]:
        session = conesens.SensitivitySession(problem, point, mode=mode)

        start = time.perf_counter()
        session.factorize()
        end = time.perf_counter()
        print("%s: factorize: %.2f s." % (mode, end - start))

        # Derivative
        start = time.perf_counter()
        dx, dy, ds = session.forward(A, b, c)
        end = time.perf_counter()
        print("%s: evaluate derivative: %.2f s." % (mode, end - start))

        # Adjoint of derivative
        start = time.perf_counter()
        dA, db, dc = session.backward(c, np.zeros(point.y.size),
                                      np.zeros(point.s.size))
        end = time.perf_counter()
        print("%s: evaluate adjoint of derivative: %.2f s." % (mode, end - start))

if __name__ == '__main__':
    np.random.seed(0)
    main(20, 10)
