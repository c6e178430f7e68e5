from dataclasses import dataclass


@dataclass(frozen=True)
class AdamUpdateConfig:
    """Hyperparameters of the Adam/AdaMax update policy.

    Args:
        epsilon: small value to prevent division by zero.
        beta1: exponential decay rate for the first moment estimates.
        beta2: exponential decay rate for the second moment (Adam) or the infinity
            norm (AdaMax) estimates.
        use_infinity_norm: use AdaMax instead of Adam.
    """

    epsilon: float = 1e-8
    beta1: float = 0.9
    beta2: float = 0.999
    use_infinity_norm: bool = False

    def __post_init__(self):
        if not self.epsilon > 0.0:
            raise ValueError(f"epsilon must be positive, got {self.epsilon}")
        if not 0.0 <= self.beta1 < 1.0:
            raise ValueError(f"beta1 must be in [0, 1), got {self.beta1}")
        if not 0.0 <= self.beta2 < 1.0:
            raise ValueError(f"beta2 must be in [0, 1), got {self.beta2}")
