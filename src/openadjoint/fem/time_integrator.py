"""Implicit Euler time integration."""

import numpy as np


class ImplicitEuler:
    """Backward Euler: ``v_t = (u_t - u_{t-1}) / dt``, ``u_pred = u_{t-1} + dt v_{t-1}``."""

    def __init__(self, dt: float):
        if dt <= 0:
            raise ValueError(f"Time step must be positive, got {dt}")
        self.dt = float(dt)
        self.x_prev = None
        self.v_prev = None

    def init(self, x0: np.ndarray, v0: np.ndarray) -> None:
        self.x_prev = np.array(x0, dtype=float)
        self.v_prev = np.array(v0, dtype=float)

    def update_quantities(self, x: np.ndarray) -> None:
        """Advance after step ``x`` has been solved."""
        x = np.asarray(x, dtype=float)
        self.v_prev = (x - self.x_prev) / self.dt
        self.x_prev = x.copy()

    def x_tilde(self) -> np.ndarray:
        """Predicted position of the next step."""
        return self.x_prev + self.dt * self.v_prev

    def acceleration_scaling(self) -> float:
        return self.dt ** 2
