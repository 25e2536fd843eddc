"""PSGD One-Sided Kron."""

import numpy as np

import torch

from onesided_kron.errors import NonFiniteGradientError, OneSidedKronError, ShapeError, StepError
from onesided_kron.precond import (
    clip_update_rms,
    from_tall,
    precond_grad,
    precond_update,
    to_tall,
    update_momentum,
)


class OneSidedKron(torch.optim.Optimizer):
    """PSGD Kron with a single triangular preconditioner on the smaller matrix dim.

    Each matrix-shaped parameter keeps a momentum buffer and an upper-triangular
    whitening factor Q of size min(m, n). Q is refreshed with probability
    `preconditioner_update_probability` per parameter per step, and the
    bias-corrected momentum is preconditioned as G @ Q^T @ Q (transposing wide
    matrices so Q acts on the smaller dim).

    Args:
        params (iterable): Parameters, `(name, parameter)` pairs such as
            `model.named_parameters()`, or dicts defining parameter groups.
        lr (float): Learning rate.
        b1 (float): Momentum parameter, in [0, 1).
        weight_decay (float): Decoupled weight decay added to the update after
            preconditioning and clipping.
        preconditioner_update_probability (float or callable): Probability of
            refreshing a parameter's preconditioner on a step. A callable is
            called with the number of steps this parameter has
            completed, see
            `precond_update_prob_schedule`.
        precond_lr (float): Learning rate for preconditioner.
        clip_update_rms (bool): Clip the update RMS at 1.1.
        merge_dims (bool): Whether to combine dims of >2D grads into a matrix.
            If False, leading dims are treated as batch dims sharing one Q.
        momentum_into_precond_update (bool): Whether to send momentum into
            preconditioner update instead of raw gradients.
        mu_dtype (torch.dtype, optional): Dtype of the momentum accumulator.
        precond_dtype (torch.dtype, optional): Dtype of the preconditioner.
        generator (torch.Generator, optional): Random source for the update
            gating and the preconditioner probes. Defaults to the global RNG.
        fail_fast (bool): Raise the first per-parameter error immediately. If
            False, failing parameters are skipped and a `StepError` listing
            them is raised once every other parameter has been updated.
        reject_nonfinite (bool): Refuse to update a parameter whose gradient
            contains NaN or Inf, raising `NonFiniteGradientError`.
    """

    def __init__(
        self,
        params,
        lr=0.0003,
        b1=0.9,
        weight_decay=0.0,
        preconditioner_update_probability=1.0,
        precond_lr=0.1,
        clip_update_rms=True,
        merge_dims=False,
        momentum_into_precond_update=True,
        mu_dtype=None,
        precond_dtype=None,
        generator=None,
        fail_fast=True,
        reject_nonfinite=False,
    ):
        if lr < 0.0:
            raise ValueError(f"Invalid learning rate: {lr}")
        if not 0.0 <= b1 < 1.0:
            raise ValueError(f"Invalid b1, must be in [0, 1): {b1}")
        if weight_decay < 0.0:
            raise ValueError(f"Invalid weight_decay: {weight_decay}")
        if precond_lr < 0.0:
            raise ValueError(f"Invalid precond_lr: {precond_lr}")
        if not callable(preconditioner_update_probability) and not (
            0.0 <= preconditioner_update_probability <= 1.0
        ):
            raise ValueError(
                "Invalid preconditioner_update_probability, must be in [0, 1]: "
                f"{preconditioner_update_probability}"
            )

        params = [*params]
        names = {}
        if params and isinstance(params[0], tuple):
            names = {p: name for name, p in params}
            params = [p for _, p in params]

        defaults = dict(
            lr=lr,
            b1=b1,
            weight_decay=weight_decay,
            preconditioner_update_probability=preconditioner_update_probability,
            precond_lr=precond_lr,
            clip_update_rms=clip_update_rms,
            merge_dims=merge_dims,
            momentum_into_precond_update=momentum_into_precond_update,
            mu_dtype=mu_dtype,
            precond_dtype=precond_dtype,
        )
        super().__init__(params, defaults)

        self._param_names = {}
        for group in self.param_groups:
            for p in group["params"]:
                self._param_names[p] = names.get(p, f"param_{len(self._param_names)}")

        self.generator = generator
        self.fail_fast = fail_fast
        self.reject_nonfinite = reject_nonfinite

    @property
    def moments(self):
        """Momentum buffers keyed by parameter name, shaped like the parameter."""
        return {
            self._name_of(p): state["momentum_buffer"].view(p.shape)
            for p, state in self.state.items()
            if "momentum_buffer" in state
        }

    @property
    def whitening_matrices(self):
        """Triangular whitening factors Q keyed by parameter name."""
        return {self._name_of(p): state["Q"] for p, state in self.state.items() if "Q" in state}

    def _name_of(self, p):
        if p not in self._param_names:
            self._param_names[p] = f"param_{len(self._param_names)}"
        return self._param_names[p]

    def _should_update_precond(self, update_prob):
        device = self.generator.device if self.generator is not None else None
        return bool(torch.rand((), generator=self.generator, device=device) < update_prob)

    @torch.no_grad()
    def step(self, closure=None):
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()

        new_states = []
        errors = {}

        for group in self.param_groups:
            for p in group["params"]:
                if p.grad is None:
                    continue
                try:
                    if self._update_param(p, group):
                        new_states.append(self.state[p])
                except OneSidedKronError as e:
                    if self.fail_fast:
                        raise
                    errors[self._name_of(p)] = e

        if new_states:
            momentum_size = sum(s["momentum_buffer"].numel() for s in new_states)
            momentum_mb = sum(
                s["momentum_buffer"].numel() * s["momentum_buffer"].element_size() for s in new_states
            ) / (2**20)
            precond_size = sum(s["Q"].numel() for s in new_states)
            precond_mb = sum(s["Q"].numel() * s["Q"].element_size() for s in new_states) / (2**20)
            print(f"PSGD Momentum buffer size: {momentum_size} elements, {momentum_mb:.2f} MB")
            print(f"PSGD Preconditioners size: {precond_size} elements, {precond_mb:.2f} MB")

        if errors:
            raise StepError(errors)

        return loss

    def _update_param(self, p, group):
        """Apply one update to p. Returns True if its state was created on this call."""
        name = self._name_of(p)
        grad = p.grad
        state = self.state[p]
        precond_dtype = group.get("precond_dtype") or torch.float32

        if grad.dim() < 2:
            raise ShapeError(f"{name}: expected a gradient with at least 2 dims, got shape {tuple(grad.shape)}")
        if self.reject_nonfinite and not torch.isfinite(grad).all():
            raise NonFiniteGradientError(f"{name}: gradient contains NaN or Inf")

        # merge smaller dims
        if "merged_shape" in state:
            if grad.numel() != int(np.prod(state["merged_shape"])):
                raise ShapeError(
                    f"{name}: gradient of shape {tuple(grad.shape)} does not match "
                    f"merged shape {tuple(state['merged_shape'])}"
                )
            grad = grad.reshape(*state["merged_shape"])
        elif len(state) == 0 and grad.dim() > 2 and group.get("merge_dims", False):
            shape1 = [int(np.prod(grad.shape[:-1])), grad.shape[-1]]
            shape2 = [grad.shape[0], int(np.prod(grad.shape[1:]))]
            shape = shape1 if np.abs(np.diff(shape1))[0] <= np.abs(np.diff(shape2))[0] else shape2
            state["merged_shape"] = shape
            grad = grad.reshape(*shape)

        m, n = grad.shape[-2:]
        created = "momentum_buffer" not in state
        if created:
            state["momentum_buffer"] = torch.zeros_like(grad, dtype=group.get("mu_dtype") or p.dtype)
            state["Q"] = torch.eye(min(m, n), dtype=precond_dtype, device=grad.device)
            state["step"] = 0
        elif state["momentum_buffer"].shape != grad.shape or state["Q"].shape != (min(m, n), min(m, n)):
            raise ShapeError(
                f"{name}: gradient of shape {tuple(grad.shape)} does not match stored momentum "
                f"{tuple(state['momentum_buffer'].shape)} and Q {tuple(state['Q'].shape)}"
            )

        state["step"] += 1
        update_prob = group["preconditioner_update_probability"]
        if callable(update_prob):
            update_prob = update_prob(state["step"] - 1)

        debiased_momentum = update_momentum(
            state["momentum_buffer"], grad, group["b1"], state["step"]
        ).to(dtype=precond_dtype)
        debiased_momentum, transposed = to_tall(debiased_momentum)

        if self._should_update_precond(update_prob):
            state["Q"] = precond_update(
                debiased_momentum
                if group.get("momentum_into_precond_update", True)
                else grad.to(dtype=precond_dtype),
                state["Q"],
                group["precond_lr"],
                generator=self.generator,
            )

        pre_grad = from_tall(precond_grad(debiased_momentum, state["Q"]), transposed)
        # one-sided preconditioning leaves tall matrices under-scaled
        pre_grad = pre_grad * max(1.0, m / n) ** 0.5

        if group["clip_update_rms"]:
            clip_update_rms(pre_grad)

        # apply weight decay and update parameters
        pre_grad = pre_grad.reshape(p.shape)
        if group["weight_decay"] != 0:
            pre_grad.add_(p, alpha=group["weight_decay"])
        p.add_(pre_grad.to(dtype=p.dtype), alpha=-group["lr"])

        return created
