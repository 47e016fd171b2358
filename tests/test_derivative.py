import threading

import numpy as np
import pytest
from scipy import sparse

import conesens.cones as cone_lib
import conesens.utils as utils
from conesens.derivative import (BackwardDifferentiator,
                                 ForwardDifferentiator, SensitivitySession,
                                 derivative)
from conesens.errors import (DimensionError, NotFactorizedError,
                             SingularSystemError)
from conesens.linear_solver import LinearSolver
from conesens.problem import OptimalPoint, ProblemData
from conesens.system import build_system

CONE_DICTS = [
    {"l": 8},
    {"z": 2, "l": 6},
    {"f": 2, "l": 6},
    {"q": [4, 3, 5]},
    {"s": [3, 2]},
    {"z": 2, "f": 1, "l": 4, "q": [3, 4], "s": [3]},
]


def _toy_lp(beta=1.0):
    # maximize 2 x1 + x2 subject to x1 + x2 <= beta, x >= 0
    A = sparse.csc_matrix(np.array([[1.0, 1.0], [-1.0, 0.0], [0.0, -1.0]]))
    b = np.array([beta, 0.0, 0.0])
    c = np.array([-2.0, -1.0])
    problem = ProblemData(A, b, c, {"l": 3})
    point = OptimalPoint([beta, 0.0], [2.0, 0.0, 1.0], [0.0, beta, 0.0])
    return problem, point


def _random_problem(cone_dict):
    A, b, c, (x, y, s) = utils.random_cone_prog(cone_dict)
    return ProblemData(A, b, c, cone_dict), OptimalPoint(x, y, s)


def _random_perturbation(problem):
    dA = utils.get_random_like(problem.A, lambda n: np.random.randn(n))
    return dA, np.random.randn(problem.m), np.random.randn(problem.n)


def test_random_cone_prog_is_optimal():
    np.random.seed(0)
    for cone_dict in CONE_DICTS:
        problem, point = _random_problem(cone_dict)
        residuals = point.residuals(problem)
        for key in ["primal", "dual", "gap", "s_cone", "y_cone"]:
            np.testing.assert_allclose(residuals[key], 0, atol=1e-8)


def test_toy_lp_closed_form():
    problem, point = _toy_lp()
    session = SensitivitySession(problem, point)
    dx, dy, ds = session.forward(db=np.array([1.0, 0.0, 0.0]))
    np.testing.assert_allclose(dx, [1.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(dy, [0.0, 0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(ds, [0.0, 1.0, 0.0], atol=1e-12)

    # the optimal value -2 beta has derivative -2 in beta, i.e. -y[0]
    dA, db, dc = session.backward(dx=problem.c)
    np.testing.assert_allclose(db[0], -2.0)


def test_toy_lp_cost_perturbation():
    problem, point = _toy_lp()
    D, DT = derivative(problem, point)
    # the vertex (beta, 0) stays optimal, only the multipliers move
    dx, dy, ds = D(dc=np.array([-1.0, 0.0]))
    np.testing.assert_allclose(dx, 0, atol=1e-12)
    np.testing.assert_allclose(ds, 0, atol=1e-12)
    np.testing.assert_allclose(dy, [1.0, 0.0, 1.0], atol=1e-12)


@pytest.mark.parametrize("mode", ["lu", "dense", "lsqr", "lsmr"])
def test_zero_perturbation(mode):
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[-1])
    session = SensitivitySession(problem, point, mode=mode)
    dx, dy, ds = session.forward()
    for d, size in [(dx, problem.n), (dy, problem.m), (ds, problem.m)]:
        assert d.shape == (size,)
        np.testing.assert_array_equal(d, 0)
    dA, db, dc = session.backward()
    np.testing.assert_array_equal(dA, 0)
    np.testing.assert_array_equal(db, 0)
    np.testing.assert_array_equal(dc, 0)


@pytest.mark.parametrize("cone_dict", CONE_DICTS)
def test_linearity(cone_dict):
    np.random.seed(0)
    problem, point = _random_problem(cone_dict)
    session = SensitivitySession(problem, point)
    d1 = _random_perturbation(problem)
    d2 = _random_perturbation(problem)
    alpha, beta = 0.7, -1.3
    combined = [alpha * u + beta * v for u, v in zip(d1, d2)]

    r1 = session.forward(*d1)
    r2 = session.forward(*d2)
    r = session.forward(*combined)
    for u, v, w in zip(r1, r2, r):
        np.testing.assert_allclose(w, alpha * u + beta * v, rtol=1e-6,
                                   atol=1e-8)


@pytest.mark.parametrize("cone_dict", CONE_DICTS)
def test_adjoint_identity(cone_dict):
    np.random.seed(0)
    problem, point = _random_problem(cone_dict)
    D, DT = derivative(problem, point)
    dA, db, dc = _random_perturbation(problem)
    dx, dy, ds = np.random.randn(problem.n), np.random.randn(problem.m), \
        np.random.randn(problem.m)

    fx, fy, fs = D(dA, db, dc)
    bA, bb, bc = DT(dx, dy, ds)
    lhs = fx @ dx + fy @ dy + fs @ ds
    rhs = np.sum(dA.toarray() * bA) + db @ bb + dc @ bc
    np.testing.assert_allclose(lhs, rhs, rtol=1e-6)


@pytest.mark.parametrize("cone_dict", CONE_DICTS)
def test_linearization_stays_optimal(cone_dict):
    # first order, (x + dx, y + dy, s + ds) solves the perturbed conditions
    np.random.seed(0)
    problem, point = _random_problem(cone_dict)
    dA, db, dc = _random_perturbation(problem)
    dx, dy, ds = SensitivitySession(problem, point).forward(dA, db, dc)
    A, b, c = problem.A, problem.b, problem.c
    np.testing.assert_allclose(A @ dx + dA @ point.x + ds, db, atol=1e-8)
    np.testing.assert_allclose(A.T @ dy + dA.T @ point.y + dc, 0, atol=1e-8)


@pytest.mark.parametrize("mode", ["dense", "lsqr", "lsmr"])
def test_modes_agree(mode):
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[-1])
    d = _random_perturbation(problem)
    expected = SensitivitySession(problem, point).forward(*d)
    result = SensitivitySession(problem, point, mode=mode).forward(*d)
    for u, v in zip(expected, result):
        np.testing.assert_allclose(u, v, rtol=1e-4, atol=1e-5)


def test_dense_and_sparse_perturbations_agree():
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[1])
    dA, db, dc = _random_perturbation(problem)
    session = SensitivitySession(problem, point)
    for u, v in zip(session.forward(dA, db, dc),
                    session.forward(dA.toarray(), db, dc)):
        np.testing.assert_allclose(u, v)


def test_shape_error_before_factorization():
    problem, point = _toy_lp()
    session = SensitivitySession(problem, point)
    with pytest.raises(DimensionError, match="db"):
        session.forward(db=np.ones(2))
    with pytest.raises(DimensionError, match="dA"):
        session.forward(dA=np.ones((2, 3)))
    with pytest.raises(DimensionError, match="ds"):
        session.backward(ds=np.ones(4))
    assert not session.is_factorized


@pytest.mark.parametrize("mode", ["lu", "dense", "lsqr", "lsmr"])
def test_singular_system(mode):
    # minimize 0 subject to x <= 1: x = 0 is one of many solutions
    problem = ProblemData(np.array([[1.0]]), np.array([1.0]), np.zeros(1),
                          {"l": 1})
    point = OptimalPoint([0.0], [0.0], [1.0])
    session = SensitivitySession(problem, point, mode=mode)
    with pytest.raises(SingularSystemError,
                       match="solution point is not differentiable"):
        session.forward(db=np.ones(1))
    assert not session.is_factorized


def test_no_point():
    problem, _ = _toy_lp()
    session = SensitivitySession(problem)
    with pytest.raises(NotFactorizedError):
        session.forward(db=np.ones(3))


def test_unsupported_mode():
    problem, point = _toy_lp()
    with pytest.raises(ValueError, match="Unsupported mode"):
        SensitivitySession(problem, point, mode="cholesky")


def test_update_point_invalidates():
    problem, point = _toy_lp()
    session = SensitivitySession(problem, point)
    session.factorize()
    assert session.is_factorized

    fresh = OptimalPoint([1.0, 0.0], [2.0, 0.0, 1.0], [0.0, 1.0, 0.0])
    session.update_point(fresh)
    assert not session.is_factorized
    assert session.point is fresh
    session.forward(db=np.ones(3))
    assert session.is_factorized

    with pytest.raises(DimensionError):
        session.update_point(OptimalPoint([1.0], [2.0], [0.0]))


def test_update_point_refactorizes():
    np.random.seed(0)
    problem, point = _random_problem({"l": 6})
    session = SensitivitySession(problem, point)
    d = _random_perturbation(problem)
    before = session.forward(*d)
    session.update_point(point)
    after = session.forward(*d)
    for u, v in zip(before, after):
        np.testing.assert_allclose(u, v)


def test_differentiators_share_factorization():
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[3])
    system = build_system(problem, point)
    solver = LinearSolver()
    solver.factorize(system.M)
    forward = ForwardDifferentiator(system, solver)
    backward = BackwardDifferentiator(system, solver)
    d = _random_perturbation(problem)
    expected = SensitivitySession(problem, point).forward(*d)
    for u, v in zip(forward.forward(*d), expected):
        np.testing.assert_allclose(u, v)
    assert backward.backward(dx=np.ones(problem.n)).dA.shape == problem.shape


def test_build_system_dense():
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[-1])
    sparse_system = build_system(problem, point)
    dense_system = build_system(problem, point, dense=True)
    assert sparse_system.M.format == "csc"
    assert isinstance(dense_system.M, np.ndarray)
    assert dense_system.size == problem.n + problem.m
    np.testing.assert_allclose(sparse_system.M.toarray(), dense_system.M)


def test_batch_shape_error_before_factorization():
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[-1])
    session = SensitivitySession(problem, point)
    good = _random_perturbation(problem)
    with pytest.raises(DimensionError, match="dA"):
        session.forward_batch([good, (np.ones((2, 2)), None, None)],
                              n_jobs=1)
    with pytest.raises(DimensionError, match="dy"):
        session.backward_batch([(None, np.ones(problem.m + 1), None)])
    with pytest.raises(DimensionError, match="triples"):
        session.forward_batch([(None, None)])
    assert not session.is_factorized


def test_batch():
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[-1])
    session = SensitivitySession(problem, point)
    perturbations = [_random_perturbation(problem) for _ in range(8)]
    results = session.forward_batch(perturbations, n_jobs=4)
    assert len(results) == 8
    for d, result in zip(perturbations, results):
        for u, v in zip(session.forward(*d), result):
            np.testing.assert_allclose(u, v)

    targets = [(np.random.randn(problem.n), np.random.randn(problem.m),
                np.random.randn(problem.m)) for _ in range(8)]
    serial = session.backward_batch(targets, n_jobs=1)
    parallel = session.backward_batch(targets, n_jobs=4)
    for u, v in zip(serial, parallel):
        for a, b in zip(u, v):
            np.testing.assert_allclose(a, b)


def test_concurrent_forward_and_update():
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[0])
    session = SensitivitySession(problem, point)
    d = _random_perturbation(problem)
    expected = session.forward(*d)
    errors = []

    def work():
        try:
            for _ in range(20):
                result = session.forward(*d)
                for u, v in zip(expected, result):
                    np.testing.assert_allclose(u, v)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for _ in range(10):
        session.update_point(point)
    for t in threads:
        t.join()
    assert errors == []


def test_build_system_operator():
    np.random.seed(0)
    problem, point = _random_problem(CONE_DICTS[-1])
    M = build_system(problem, point).M.toarray()
    system = build_system(problem, point, operator=True)
    size = problem.n + problem.m
    assert system.M.shape == (size, size)
    for i in range(size):
        ei = np.zeros(size)
        ei[i] = 1.0
        np.testing.assert_allclose(system.M.matvec(ei), M[:, i], atol=1e-12)
        np.testing.assert_allclose(system.M.rmatvec(ei), M[i], atol=1e-12)

    dz = np.random.randn(size)
    for u, v in zip(system.solution_map(dz),
                    build_system(problem, point).solution_map(dz)):
        np.testing.assert_allclose(u, v, atol=1e-12)
