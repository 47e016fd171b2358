import conesens
import time
import numpy as np

K = {'z': 5, 'l': 60, 'q': [10, 10, 10]}

batch_size = 16

As, bs, cs, Ks = [], [], [], []
for _ in range(batch_size):
    A, b, c, _ = conesens.utils.random_cone_prog(K)
    As += [A]
    bs += [b]
    cs += [c]
    Ks += [K]


def time_function(f, N=1):
    result = []
    for i in range(N):
        tic = time.time()
        f()
        toc = time.time()
        result += [toc - tic]
    return np.mean(result), np.std(result)

for n_jobs in range(1, 8):
    def f_forward():
        return conesens.solve_and_derivative_batch(As, bs, cs, Ks,
                                                   n_jobs_forward=n_jobs, n_jobs_backward=n_jobs, solve_method="ECOS", verbose=False)
    xs, ys, ss, D_batch, DT_batch = conesens.solve_and_derivative_batch(As, bs, cs, Ks,
                                                                        n_jobs_forward=1, n_jobs_backward=n_jobs, solve_method="ECOS", verbose=False)

    def f_backward():
        DT_batch(xs, ys, ss)

    mean_forward, std_forward = time_function(f_forward)
    mean_backward, std_backward = time_function(f_backward)
    print("%03d | %4.4f +/- %2.2f | %4.4f +/- %2.2f" %
          (n_jobs, mean_forward, std_forward, mean_backward, std_backward))
