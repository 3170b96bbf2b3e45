"""Nonlinear solvers, forms, parametrizations and adjoint machinery."""
