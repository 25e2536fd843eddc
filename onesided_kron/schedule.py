import torch


class ProbScheduler:
    """Exponentially decaying preconditioner update probability.

    Holds `max_prob` for the first `flat_start` steps, then decays by
    `exp(-decay)` per step, never dropping below `min_prob`.
    """

    def __init__(self, max_prob=1.0, min_prob=0.03, decay=0.001, flat_start=500):
        self.max_prob = torch.tensor(max_prob, dtype=torch.float32)
        self.min_prob = torch.tensor(min_prob, dtype=torch.float32)
        self.decay = torch.tensor(decay, dtype=torch.float32)
        self.flat_start = torch.tensor(flat_start, dtype=torch.float32)

    def __call__(self, n):
        n = torch.as_tensor(n, dtype=torch.float32)
        prob = self.max_prob * torch.exp(-self.decay * (n - self.flat_start))
        return prob.clamp(min=self.min_prob, max=self.max_prob)

    def __repr__(self):
        return (
            f"{self.__class__.__name__}(max_prob={self.max_prob.item():g}, "
            f"min_prob={self.min_prob.item():g}, decay={self.decay.item():g}, "
            f"flat_start={self.flat_start.item():g})"
        )


def precond_update_prob_schedule(max_prob=1.0, min_prob=0.03, decay=0.001, flat_start=500):
    """Opt-in schedule for `OneSidedKron(preconditioner_update_probability=...)`.

    OneSidedKron refreshes every whitening matrix on every step by default. Passing
    this schedule instead refreshes them less often once training has settled,
    trading preconditioner freshness for the cost of the triangular solves.
    """
    return ProbScheduler(max_prob, min_prob, decay, flat_start)
