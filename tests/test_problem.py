import numpy as np
import pytest
from scipy import sparse

import conesens.cones as cone_lib
from conesens.errors import DimensionError
from conesens.problem import OptimalPoint, ProblemData, check_partition


def _lp():
    A = sparse.csc_matrix(np.array([[1.0, 1.0], [-1.0, 0.0], [0.0, -1.0]]))
    b = np.array([1.0, 0.0, 0.0])
    c = np.array([-2.0, -1.0])
    return A, b, c


def test_problem_data():
    A, b, c = _lp()
    problem = ProblemData(A, b, c, {"l": 3})
    assert problem.shape == (3, 2)
    assert problem.m == 3 and problem.n == 2
    assert problem.cone_dict() == {"l": 3}
    assert problem.A.format == "csc"


def test_problem_data_is_a_copy():
    A, b, c = _lp()
    problem = ProblemData(A, b, c, {"l": 3})
    b[0] = 100.0
    A.data[:] = 0.0
    assert problem.b[0] == 1.0
    assert problem.A.nnz == 4
    with pytest.raises(ValueError):
        problem.b[0] = 2.0
    with pytest.raises(ValueError):
        problem.A.data[0] = 2.0


def test_problem_data_drops_explicit_zeros():
    A = sparse.csc_matrix(np.array([[1.0, 0.0], [0.0, 1.0]]))
    A.data[0] = 0.0
    problem = ProblemData(A, np.zeros(2), np.zeros(2), {"z": 2})
    assert problem.A.nnz == 1


def test_problem_data_shapes():
    A, b, c = _lp()
    with pytest.raises(DimensionError):
        ProblemData(A, b[:2], c, {"l": 3})
    with pytest.raises(DimensionError):
        ProblemData(A, b, np.ones(3), {"l": 3})
    with pytest.raises(DimensionError):
        ProblemData(A, b, c, {"l": 2})
    with pytest.raises(DimensionError):
        ProblemData(A, b, c, {"l": 1, "q": [3]})


def test_problem_data_nan():
    A, b, c = _lp()
    A = A.toarray()
    A[0, 0] = np.nan
    with pytest.raises(RuntimeError, match="NaN"):
        ProblemData(A, b, c, {"l": 3})


def test_check_partition():
    blocks = cone_lib.make_blocks([(cone_lib.ZERO, 2), (cone_lib.SOC, 3)])
    check_partition(blocks, 5)
    with pytest.raises(DimensionError, match="cover 5 rows"):
        check_partition(blocks, 6)

    gap = [cone_lib.ConeBlock(cone_lib.ZERO, 2, 0, 2),
           cone_lib.ConeBlock(cone_lib.POS, 2, 3, 5)]
    with pytest.raises(DimensionError, match="gap"):
        check_partition(gap, 5)

    overlap = [cone_lib.ConeBlock(cone_lib.ZERO, 2, 0, 2),
               cone_lib.ConeBlock(cone_lib.POS, 2, 1, 3)]
    with pytest.raises(DimensionError, match="overlap"):
        check_partition(overlap, 3)

    wrong_size = [cone_lib.ConeBlock(cone_lib.PSD, 2, 0, 4)]
    with pytest.raises(DimensionError, match="expected 3"):
        check_partition(wrong_size, 4)


def test_problem_data_from_blocks():
    A, b, c = _lp()
    blocks = cone_lib.make_blocks([(cone_lib.FREE, 1), (cone_lib.POS, 2)])
    problem = ProblemData(A, b, c, blocks)
    assert problem.cones == tuple(blocks)
    assert problem.cone_dict() == {"f": 1, "l": 2}


def test_optimal_point():
    A, b, c = _lp()
    problem = ProblemData(A, b, c, {"l": 3})
    point = OptimalPoint([1.0, 0.0], [2.0, 0.0, 1.0], [0.0, 1.0, 0.0])
    point.check_compatible(problem)
    with pytest.raises(ValueError):
        point.x[0] = 0.0

    residuals = point.residuals(problem)
    for key in ["primal", "dual", "gap", "s_cone", "y_cone"]:
        np.testing.assert_allclose(residuals[key], 0, atol=1e-12)


def test_optimal_point_shapes():
    A, b, c = _lp()
    problem = ProblemData(A, b, c, {"l": 3})
    with pytest.raises(DimensionError):
        OptimalPoint(np.zeros(2), np.zeros(3), np.zeros(2))
    with pytest.raises(DimensionError):
        OptimalPoint(np.zeros(3), np.zeros(3), np.zeros(3)).check_compatible(
            problem)
    with pytest.raises(DimensionError):
        OptimalPoint(np.zeros(2), np.zeros(2), np.zeros(2)).check_compatible(
            problem)
