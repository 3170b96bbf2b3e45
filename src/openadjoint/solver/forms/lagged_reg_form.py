"""Proximal regularization towards a lagged iterate."""

import numpy as np
import scipy.sparse as sp

from openadjoint.solver.forms.form import Form


class LaggedRegForm(Form):
    """``1/2 |x - x_lagged|^2`` with ``x_lagged`` frozen by :meth:`init_lagging`."""

    def __init__(self, n_lagging_iters: int = -1):
        super().__init__()
        self.n_lagging_iters = n_lagging_iters if n_lagging_iters >= 0 else np.iinfo(int).max
        self.x_lagged = None

    @property
    def uses_lagging(self) -> bool:
        return True

    def init(self, x):
        self.init_lagging(x)

    def init_lagging(self, x):
        self.x_lagged = np.array(x, dtype=float)

    def update_lagging(self, x, iter_num):
        self.init_lagging(x)
        if iter_num >= self.n_lagging_iters:
            self.enabled = False

    def value_unweighted(self, x):
        d = x - self.x_lagged
        return 0.5 * float(d @ d)

    def first_derivative_unweighted(self, x):
        return x - self.x_lagged

    def second_derivative_unweighted(self, x):
        return sp.identity(len(x), format='csr')
