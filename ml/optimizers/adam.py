import logging
import math
from abc import ABC, abstractmethod
from dataclasses import replace

import torch

from ml.optimizers.update_config import AdamUpdateConfig
from ml.tensor import Tensor


class MomentUpdate(ABC):
    """Per-parameter adaptive update policy based on moment estimates of the gradient.

    An optimization loop owns one instance per parameter matrix. It calls
    `initialize` once the shape of the matrix is known, and `update` once per
    iteration. Both the parameters and the moment accumulators are modified in place.

    The first moment (momentum) is shared by all variants:
        m_t = beta1 * m_{t-1} + (1 - beta1) * g_t

    Subclasses define the second accumulator and how the parameter step is derived
    from it.
    """

    _infinity_norm: bool

    def __init__(self, config: AdamUpdateConfig | None = None):
        if config is None:
            config = AdamUpdateConfig(use_infinity_norm=self._infinity_norm)
        if config.use_infinity_norm != self._infinity_norm:
            raise ValueError(
                f"{type(self).__name__} cannot be built from a config with "
                f"use_infinity_norm={config.use_infinity_norm}"
            )
        self._config = config

        # Exponentially weighted moving average of the gradient. Allocated by
        # `initialize`.
        self.m: Tensor | None = None

    @property
    def config(self) -> AdamUpdateConfig:
        return self._config

    @property
    def epsilon(self) -> float:
        return self._config.epsilon

    @epsilon.setter
    def epsilon(self, value: float) -> None:
        self._config = replace(self._config, epsilon=value)

    @property
    def beta1(self) -> float:
        return self._config.beta1

    @beta1.setter
    def beta1(self, value: float) -> None:
        self._config = replace(self._config, beta1=value)

    @property
    def beta2(self) -> float:
        return self._config.beta2

    @beta2.setter
    def beta2(self, value: float) -> None:
        self._config = replace(self._config, beta2=value)

    @property
    def use_infinity_norm(self) -> bool:
        return self._infinity_norm

    def initialize(
        self,
        rows: int,
        cols: int,
        dtype: torch.dtype = torch.float64,
        device: torch.device | str | None = None,
    ) -> None:
        """Zero the moment accumulators for a parameter matrix of shape (rows, cols).

        Calling this again discards all accumulated state.

        Args:
            rows: number of rows in the parameter (and gradient) matrix.
            cols: number of columns in the parameter (and gradient) matrix.
            dtype: dtype of the accumulators.
            device: device on which to create the accumulators.
        """
        if rows <= 0 or cols <= 0:
            raise ValueError(f"Invalid accumulator shape: ({rows}, {cols})")

        self.m = torch.zeros(rows, cols, dtype=dtype, device=device)
        self._initialize_norm(rows, cols, dtype, device)

        logging.debug(
            f"{type(self).__name__}: initialized accumulators of shape ({rows}, {cols})"
        )

    def update(
        self, parameters: Tensor, step_size: float, gradient: Tensor, iteration: int
    ) -> None:
        """Apply one update step to `parameters` in place.

        Args:
            parameters: parameter matrix, modified in place.
            step_size: learning rate for this iteration.
            gradient: gradient of the objective wrt. `parameters`.
            iteration: 1-based index of the current iteration, used for the bias
                corrections.
        """
        self._check_update_args(parameters, gradient, iteration)

        with torch.no_grad():
            grad = gradient.to(dtype=self.m.dtype)

            # Momentum: update moving average of gradients
            self.m.mul_(self.beta1).add_(grad, alpha=1 - self.beta1)

            self._update_norm(grad)
            self._step(parameters, step_size, iteration)

    def _check_update_args(
        self, parameters: Tensor, gradient: Tensor, iteration: int
    ) -> None:
        if self.m is None:
            raise RuntimeError("initialize() must be called before update()")
        if parameters.shape != self.m.shape:
            raise ValueError(
                f"Parameters of shape {tuple(parameters.shape)} do not match "
                f"accumulators of shape {tuple(self.m.shape)}"
            )
        if gradient.shape != self.m.shape:
            raise ValueError(
                f"Gradient of shape {tuple(gradient.shape)} does not match "
                f"accumulators of shape {tuple(self.m.shape)}"
            )
        if iteration < 0:
            raise ValueError(f"Iteration must be non-negative, got {iteration}")

    @abstractmethod
    def _initialize_norm(
        self, rows: int, cols: int, dtype: torch.dtype, device: torch.device | None
    ) -> None: ...

    @abstractmethod
    def _update_norm(self, grad: Tensor) -> None: ...

    @abstractmethod
    def _step(self, parameters: Tensor, step_size: float, iteration: int) -> None: ...


class AdamVariant(MomentUpdate):
    """Adam (Adaptive Moment Estimation).

    - RMSProp update:
        v_t = beta2 * v_{t-1} + (1 - beta2) * g_t^2

    - Parameter update, with both bias corrections folded into the step size:
        w_t = w_{t-1} - lr * sqrt(1 - beta2^t) / (1 - beta1^t) * m_t / (sqrt(v_t) + eps)

    NOTE: the denominator `sqrt(v_t) + eps` approximates the exact
    `sqrt(v_t) + sqrt(1 - beta2^t) * eps`. This is the formulation of Kingma & Ba
    (Section 2) and is kept as is.
    """

    _infinity_norm = False

    def __init__(self, config: AdamUpdateConfig | None = None):
        super().__init__(config)

        # Exponentially weighted moving average of the squared gradient.
        self.v: Tensor | None = None

    def _initialize_norm(self, rows, cols, dtype, device):
        self.v = torch.zeros(rows, cols, dtype=dtype, device=device)

    def _check_update_args(self, parameters, gradient, iteration):
        super()._check_update_args(parameters, gradient, iteration)
        if 1.0 - self.beta1**iteration == 0.0:
            raise ValueError("Iterations are 1-based, got iteration 0")

    def _update_norm(self, grad):
        # RMSProp: update moving average of squared gradients
        self.v.mul_(self.beta2).add_(grad * grad, alpha=1 - self.beta2)

    def _step(self, parameters, step_size, iteration):
        bias_correction1 = 1.0 - self.beta1**iteration
        bias_correction2 = 1.0 - self.beta2**iteration

        step = step_size * math.sqrt(bias_correction2) / bias_correction1
        parameters.sub_(step * self.m / (self.v.sqrt() + self.epsilon))


class AdaMaxVariant(MomentUpdate):
    """AdaMax, the variant of Adam based on the infinity norm (Kingma & Ba, Section 7).

    - Infinity norm update:
        u_t = max(beta2 * u_{t-1}, |g_t|)

    - Parameter update:
        w_t = w_{t-1} - lr / (1 - beta1^t) * m_t / (u_t + eps)

    With iteration 0 the first bias correction vanishes and the parameter update is
    skipped. The moments are still updated.
    """

    _infinity_norm = True

    def __init__(self, config: AdamUpdateConfig | None = None):
        super().__init__(config)

        # Exponentially weighted infinity norm of the gradient.
        self.u: Tensor | None = None

    def _initialize_norm(self, rows, cols, dtype, device):
        self.u = torch.zeros(rows, cols, dtype=dtype, device=device)

    def _update_norm(self, grad):
        self.u.mul_(self.beta2)
        torch.maximum(self.u, grad.abs(), out=self.u)

    def _step(self, parameters, step_size, iteration):
        bias_correction1 = 1.0 - self.beta1**iteration
        if bias_correction1 == 0.0:
            logging.debug("AdaMaxVariant: iteration 0, parameter update skipped")
            return

        parameters.sub_(step_size / bias_correction1 * self.m / (self.u + self.epsilon))


def from_config(config: AdamUpdateConfig) -> MomentUpdate:
    """Build the variant selected by `config.use_infinity_norm`."""
    if config.use_infinity_norm:
        return AdaMaxVariant(config)
    return AdamVariant(config)


def create_update_policy(
    epsilon: float = 1e-8,
    beta1: float = 0.9,
    beta2: float = 0.999,
    use_infinity_norm: bool = False,
) -> MomentUpdate:
    """Create an Adam (or, with `use_infinity_norm=True`, AdaMax) update policy.

    Args:
        epsilon: small value to prevent division by zero.
        beta1: exponential decay rate for the first moment estimates.
        beta2: exponential decay rate for the second moment (or infinity norm)
            estimates.
        use_infinity_norm: use AdaMax instead of Adam.

    Returns:
        Uninitialized update policy. Call `initialize` before the first `update`.
    """
    config = AdamUpdateConfig(
        epsilon=epsilon,
        beta1=beta1,
        beta2=beta2,
        use_infinity_norm=use_infinity_norm,
    )
    return from_config(config)
