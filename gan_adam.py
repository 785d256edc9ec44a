from dataclasses import dataclass

from gan_kernels import Hazard


@dataclass
class ArchState:
    """Hyperparameters and running state shared by every layer of an architecture.

    ``adam_beta1t``/``adam_beta2t`` hold beta1**t and beta2**t and are
    advanced once per updating backward pass.
    """
    adam_alpha: float = 0.0002
    adam_beta1: float = 0.5
    adam_beta2: float = 0.999
    adam_beta1t: float = 1.0
    adam_beta2t: float = 1.0
    adam_epsilon: float = 1e-8
    bn_momentum: float = 0.99

    def advance(self):
        self.adam_beta1t *= self.adam_beta1
        self.adam_beta2t *= self.adam_beta2


class AdamParameter:
    """A trainable tensor with its gradient and its first/second moments."""

    def __init__(self, value, grad, m, v):
        self.value = value
        self.grad = grad
        self.m = m
        self.v = v

    def tensors(self):
        return self.value, self.grad, self.m, self.v

    def step(self, state, hazard=Hazard.RAW):
        # m, v and the weight are rewritten only after all three are computed
        self.value.engine.dispatch(
            hazard, 'adam_update', self.value, self.grad, self.m, self.v,
            state.adam_alpha, state.adam_beta1, state.adam_beta2,
            state.adam_beta1t, state.adam_beta2t, state.adam_epsilon)
