"""Numerical kernels for the one-sided PSGD Kron preconditioner."""

import math

import torch
from torch import Tensor


def update_momentum(momentum_buffer: Tensor, grad: Tensor, beta, step):
    """EMA of gradients, updated in place. Returns the bias-corrected momentum."""
    if step < 1:
        raise ValueError(f"Bias correction needs step >= 1, got step={step}")
    momentum_buffer.mul_(beta).add_(grad, alpha=1 - beta)
    return momentum_buffer.div(1 - beta**step)


def to_tall(G: Tensor):
    """Swap the trailing two axes of a wide matrix so that rows >= cols.

    Returns the (possibly transposed) view and whether a transpose was applied.
    """
    transposed = G.size(-2) < G.size(-1)
    if transposed:
        G = G.transpose(-2, -1)
    return G, transposed


def from_tall(G: Tensor, transposed: bool):
    """Undo `to_tall`."""
    return G.transpose(-2, -1) if transposed else G


def _lb(A: Tensor, max_abs: Tensor):
    """Cheap lower bound for the spectral norm of A.

    One step of power iteration started from the heaviest row or column.
    """
    A = A / max_abs
    aa = torch.real(A * A.conj())
    value0, i = torch.max(torch.sum(aa, dim=0), 0)
    value1, j = torch.max(torch.sum(aa, dim=1), 0)
    if value0 > value1:
        x = A[:, i].conj() @ A
        return max_abs * torch.linalg.vector_norm((x / torch.linalg.vector_norm(x)) @ A.H)
    else:
        x = A @ A[j].conj()
        return max_abs * torch.linalg.vector_norm(A.H @ (x / torch.linalg.vector_norm(x)))


def norm_lower_bound(A: Tensor):
    """Lower bound for the spectral norm of square matrix A, 0 for a zero matrix."""
    max_abs = A.norm(float("inf"))
    if max_abs > 0:
        return _lb(A, max_abs)
    return max_abs


def precond_update(G: Tensor, Q: Tensor, lr, generator=None):
    """Refine the upper-triangular whitening factor Q with one probe and one Newton step.

    G may be wide or carry leading batch dims; it is made tall and its batch
    entries are folded into rows, so Q always stays n x n with n = min(m, n).
    The returned Q is upper-triangular whenever the input is. If the step-size
    normalizer degenerates to zero, Q is returned unchanged.
    """
    G, _ = to_tall(G)
    m, n = G.shape[-2:]
    G = G.reshape(-1, n)

    V = torch.randn(G.shape, dtype=torch.float32, device=G.device, generator=generator)
    V /= math.sqrt(m)
    # Bh = V @ inv(Q), roughly same complexity as a matmul
    Bh = torch.linalg.solve_triangular(Q.float(), V, upper=True, left=False).to(dtype=G.dtype)
    BBh = Bh.T @ Bh
    A = G @ Q.T
    AhA = A.T @ A

    lb = norm_lower_bound(AhA + BBh)
    if lb == 0:
        return Q
    return Q - lr / lb * torch.triu(AhA - BBh) @ Q


def precond_grad(G: Tensor, Q: Tensor):
    """Precondition a tall gradient: G @ Q^T @ Q, broadcast over batch dims."""
    return torch.einsum("...ij,kj,kl->...il", G, Q, Q)


def clip_update_rms(g: Tensor, max_rms=1.1):
    """Scale g in place so its RMS does not exceed max_rms."""
    g.mul_(
        torch.minimum(
            torch.tensor(1.0, dtype=g.dtype, device=g.device),
            max_rms / g.square().mean().sqrt().add(1e-12),
        )
    )
    return g
