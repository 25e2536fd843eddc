from onesided_kron.onesided_kron import OneSidedKron
from onesided_kron.schedule import ProbScheduler, precond_update_prob_schedule
from onesided_kron.errors import NonFiniteGradientError, OneSidedKronError, ShapeError, StepError

__all__ = [
    "OneSidedKron",
    "ProbScheduler",
    "precond_update_prob_schedule",
    "OneSidedKronError",
    "ShapeError",
    "NonFiniteGradientError",
    "StepError",
]
