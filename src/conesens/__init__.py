__version__ = "0.1.0"

from conesens.cone_program import solve_and_derivative, \
    solve_and_derivative_batch, \
    solve_internal
from conesens.cones import ZERO, FREE, POS, SOC, PSD, ConeBlock
from conesens.derivative import ForwardDifferentiator, \
    BackwardDifferentiator, \
    SensitivitySession, \
    derivative
from conesens.errors import ConeSensError, DimensionError, \
    UnsupportedConeError, \
    SingularSystemError, \
    NotFactorizedError, \
    SolverError
from conesens.linear_solver import LinearSolver
from conesens.problem import ProblemData, OptimalPoint
from conesens.system import build_system
from conesens import utils
