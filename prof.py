import numpy as np
import time

import conesens.utils as utils
from conesens.cone_program import solve_internal
from conesens.derivative import SensitivitySession
from conesens.problem import OptimalPoint, ProblemData


modes = ['lu', 'dense', 'lsqr']
n_sweep = 256
m = 100
n = 50

np.random.seed(0)
A, b, c, cone_dims = utils.least_squares_eq_scs_data(m, n)
result = solve_internal(A, b, c, cone_dims, solve_method="ECOS")
problem = ProblemData(A, b, c, cone_dims)
point = OptimalPoint(result["x"], result["y"], result["s"])

perturbations = []
for i in range(n_sweep):
    perturbations.append((
        utils.get_random_like(A, lambda n: np.random.normal(0, 1e-2, size=n)),
        np.random.normal(0, 1e-2, size=b.size),
        np.random.normal(0, 1e-2, size=c.size)))
targets = [(c, np.zeros(b.size), np.zeros(b.size))] * n_sweep

for mode in modes:
    session = SensitivitySession(problem, point, mode=mode)
    tic = time.time()
    session.factorize()
    factorize_time = time.time() - tic

    tic = time.time()
    session.forward_batch(perturbations)
    derivative_time = time.time() - tic

    tic = time.time()
    session.backward_batch(targets)
    adjoint_derivative_time = time.time() - tic

    print(mode, factorize_time, derivative_time, adjoint_derivative_time)
