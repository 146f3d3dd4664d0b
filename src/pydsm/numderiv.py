"""
Finite difference derivatives.

Central differences with a step scaled to each coordinate,
``h_i = step * max(|x_i|, 1)``. The Hessian is built from central
differences of the central-difference gradient and symmetrised.
"""

from __future__ import annotations

from typing import Callable

import numpy as np
from numpy.typing import NDArray


def _steps(x: NDArray, step: float) -> NDArray:
    return step * np.maximum(np.abs(x), 1.0)


def numerical_gradient(
    fun: Callable[[NDArray], float],
    x: NDArray,
    step: float = 1e-5,
) -> NDArray:
    """Gradient of a scalar function by central differences.

    Parameters
    ----------
    fun : callable
        Scalar function of a 1-D array
    x : NDArray
        Point at which to differentiate
    step : float
        Relative step size

    Returns
    -------
    NDArray
        Gradient, same length as ``x``
    """
    x = np.asarray(x, dtype=float)
    h = _steps(x, step)
    grad = np.empty_like(x)
    for i in range(x.size):
        e = np.zeros_like(x)
        e[i] = h[i]
        grad[i] = (fun(x + e) - fun(x - e)) / (2.0 * h[i])
    return grad


def numerical_jacobian(
    fun: Callable[[NDArray], NDArray],
    x: NDArray,
    step: float = 1e-5,
) -> NDArray:
    """Jacobian of a vector function by central differences.

    Returns
    -------
    NDArray
        Matrix of shape ``(len(fun(x)), len(x))``
    """
    x = np.asarray(x, dtype=float)
    h = _steps(x, step)
    columns = []
    for i in range(x.size):
        e = np.zeros_like(x)
        e[i] = h[i]
        diff = np.asarray(fun(x + e), dtype=float) - np.asarray(fun(x - e), dtype=float)
        columns.append(diff / (2.0 * h[i]))
    if not columns:
        return np.zeros((np.asarray(fun(x)).size, 0))
    return np.column_stack(columns)


def numerical_hessian(
    fun: Callable[[NDArray], float],
    x: NDArray,
    step: float = 1e-4,
) -> NDArray:
    """Hessian of a scalar function from finite-difference gradients.

    Column ``i`` is the central difference of the numerical gradient along
    coordinate ``i``. The inner gradient uses the same relative step.

    Parameters
    ----------
    fun : callable
        Scalar function of a 1-D array
    x : NDArray
        Point at which to differentiate
    step : float
        Relative step size for both difference levels

    Returns
    -------
    NDArray
        Symmetric matrix of shape ``(len(x), len(x))``
    """
    x = np.asarray(x, dtype=float)

    def grad(z):
        return numerical_gradient(fun, z, step)

    hess = numerical_jacobian(grad, x, step)
    return 0.5 * (hess + hess.T)
