import contextlib
import logging
import multiprocessing as mp
import threading
from collections import namedtuple
from multiprocessing.pool import ThreadPool

import numpy as np
import scipy.sparse as sparse
from threadpoolctl import threadpool_limits

from conesens.errors import DimensionError, NotFactorizedError
from conesens.linear_solver import (DEFAULT_METHOD, ITERATIVE_METHODS,
                                    METHODS, LinearSolver)
from conesens.system import build_system

log = logging.getLogger(__name__)


# Results are always dense, whatever the sparsity of the input.
ForwardResult = namedtuple("ForwardResult", ["dx", "dy", "ds"])
BackwardResult = namedtuple("BackwardResult", ["dA", "db", "dc"])


def _as_vector(v, size, name):
    if v is None:
        return np.zeros(size)
    if sparse.issparse(v):
        v = v.toarray()
    v = np.asarray(v, dtype=float)
    if v.shape != (size,):
        raise DimensionError("%s has shape %s, expected %s" %
                             (name, v.shape, (size,)))
    return v


def check_perturbation(shape, dA=None, db=None, dc=None):
    """Validates a data perturbation against an (m, n) problem.

    Missing entries are zero. `dA` may be sparse or dense and is returned
    as given (sparse stays sparse); `db` and `dc` become dense vectors.
    Nothing is broadcast or truncated.
    """
    m, n = shape
    if dA is None:
        dA = sparse.csc_matrix((m, n))
    elif not sparse.issparse(dA):
        dA = np.asarray(dA, dtype=float)
    if dA.shape != (m, n):
        raise DimensionError("dA has shape %s, expected %s" %
                             (dA.shape, (m, n)))
    return dA, _as_vector(db, m, "db"), _as_vector(dc, n, "dc")


def check_target(shape, dx=None, dy=None, ds=None):
    """Validates a solution-space direction against an (m, n) problem."""
    m, n = shape
    return (_as_vector(dx, n, "dx"), _as_vector(dy, m, "dy"),
            _as_vector(ds, m, "ds"))


class ForwardDifferentiator(object):
    """Applies the derivative of the solution map to data perturbations."""

    def __init__(self, system, solver):
        self.system = system
        self.solver = solver

    def forward(self, dA=None, db=None, dc=None):
        """Applies the derivative at (A, b, c) to perturbations dA, db, dc
        Args:
            dA: SciPy sparse matrix or NumPy array of the shape of `A`
            db: NumPy array representing perturbation in `b`
            dc: NumPy array representing perturbation in `c`
        Returns:
            ForwardResult (dx, dy, ds) of dense NumPy arrays.
        """
        dA, db, dc = check_perturbation(self.system.problem.shape, dA, db, dc)
        rhs = self.system.data_rhs(dA, db, dc)
        if not rhs.any():
            log.debug("zero right-hand side, skipping the solve")
            dz = np.zeros(rhs.size)
        else:
            dz = self.solver.solve(rhs)
        dx, dy, ds = self.system.solution_map(dz)
        return ForwardResult(dx, dy, ds)


class BackwardDifferentiator(object):
    """Applies the adjoint of the derivative to solution-space directions."""

    def __init__(self, system, solver):
        self.system = system
        self.solver = solver

    def backward(self, dx=None, dy=None, ds=None):
        """Applies the adjoint of the derivative at (A, b, c) to dx, dy, ds
        Args:
            dx: NumPy array representing perturbation in `x`
            dy: NumPy array representing perturbation in `y`
            ds: NumPy array representing perturbation in `s`
        Returns:
            BackwardResult (dA, db, dc) of dense NumPy arrays.
        """
        dx, dy, ds = check_target(self.system.problem.shape, dx, dy, ds)
        dz = self.system.solution_map_adjoint(dx, dy, ds)
        if not dz.any():
            r = np.zeros(dz.shape)
        else:
            r = self.solver.solve_transpose(dz)
        return BackwardResult(*self.system.data_adjoint(r))


class _ReadWriteLock(object):
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextlib.contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class SensitivitySession(object):
    """Owns the factorized derivative system of one problem at one point.

    The system is built and factorized on the first request and reused by
    every later `forward` and `backward` call. `update_point` discards it;
    the next request rebuilds it for the new point. Calls may come from
    several threads: solves share the factorization, a rebuild waits for
    in-flight solves and blocks new ones until it is done.

    Args:
        problem: ProblemData.
        point: (optional) OptimalPoint of `problem`.
        mode: LinearSolver method, one of "lu", "dense", "lsqr", "lsmr".
        solver_kwargs: (optional) keyword arguments for LinearSolver.
    """

    def __init__(self, problem, point=None, mode=DEFAULT_METHOD,
                 **solver_kwargs):
        if mode not in METHODS:
            raise ValueError("Unsupported mode {}; the supported modes are "
                             "{}".format(mode, METHODS))
        self.problem = problem
        self.mode = mode
        self.solver_kwargs = solver_kwargs
        self._lock = _ReadWriteLock()
        self._point = None
        self._system = None
        self._solver = None
        if point is not None:
            self.update_point(point)

    @property
    def point(self):
        return self._point

    @property
    def is_factorized(self):
        return self._solver is not None

    def update_point(self, point):
        """Replaces the solution point, invalidating the factorization."""
        point.check_compatible(self.problem)
        with self._lock.write():
            stale = self._solver is not None
            self._point = point
            self._system = None
            self._solver = None
        if stale:
            log.debug("invalidated factorization of %r", self.problem)

    def factorize(self):
        """Builds and factorizes the system now, unless it already is."""
        with self._lock.write():
            if self._solver is not None:
                return
            if self._point is None:
                raise NotFactorizedError(
                    "No solution point; call update_point first.")
            system = build_system(self.problem, self._point,
                                  dense=self.mode == "dense",
                                  operator=self.mode in ITERATIVE_METHODS)
            solver = LinearSolver(method=self.mode, **self.solver_kwargs)
            solver.factorize(system.M)
            self._system, self._solver = system, solver

    @contextlib.contextmanager
    def _factorized(self):
        while True:
            with self._lock.read():
                if self._solver is not None:
                    yield self._system, self._solver
                    return
            self.factorize()

    def forward(self, dA=None, db=None, dc=None):
        """Returns (dx, dy, ds) for the perturbation (dA, db, dc); see
        `ForwardDifferentiator.forward`."""
        dA, db, dc = check_perturbation(self.problem.shape, dA, db, dc)
        with self._factorized() as (system, solver):
            return ForwardDifferentiator(system, solver).forward(dA, db, dc)

    def backward(self, dx=None, dy=None, ds=None):
        """Returns (dA, db, dc) for the direction (dx, dy, ds); see
        `BackwardDifferentiator.backward`."""
        dx, dy, ds = check_target(self.problem.shape, dx, dy, ds)
        with self._factorized() as (system, solver):
            return BackwardDifferentiator(system, solver).backward(
                dx, dy, ds)

    def forward_batch(self, perturbations, n_jobs=-1):
        """Applies `forward` to a list of (dA, db, dc) triples, using a
        ThreadPool of `n_jobs` threads (-1 for the number of CPUs)."""
        perturbations = self._check_triples(perturbations,
                                            check_perturbation)
        return self._map(lambda d: self.forward(*d), perturbations, n_jobs)

    def backward_batch(self, targets, n_jobs=-1):
        """Applies `backward` to a list of (dx, dy, ds) triples."""
        targets = self._check_triples(targets, check_target)
        return self._map(lambda t: self.backward(*t), targets, n_jobs)

    def _check_triples(self, items, check):
        checked = []
        for item in items:
            if len(item) != 3:
                raise DimensionError("Expected triples, got %d entries" %
                                     len(item))
            checked.append(check(self.problem.shape, *item))
        return checked

    def _map(self, fn, items, n_jobs):
        if n_jobs == -1:
            n_jobs = mp.cpu_count()
        n_jobs = max(1, min(len(items), n_jobs))
        self.factorize()
        if n_jobs == 1:
            return [fn(item) for item in items]
        pool = ThreadPool(processes=n_jobs)
        try:
            with threadpool_limits(limits=1):
                results = pool.map(fn, items)
        finally:
            pool.close()
        return results


def derivative(problem, point, mode=DEFAULT_METHOD, **solver_kwargs):
    """Returns the derivative of the solution map at `point` and its adjoint
    as callables

        D(dA, db, dc) -> dx, dy, ds
        DT(dx, dy, ds) -> dA, db, dc

    sharing a single factorization.
    """
    session = SensitivitySession(problem, point, mode=mode, **solver_kwargs)

    def D(dA=None, db=None, dc=None):
        return tuple(session.forward(dA, db, dc))

    def DT(dx=None, dy=None, ds=None):
        return tuple(session.backward(dx, dy, ds))

    D.session = session
    DT.session = session
    return D, DT
