"""Exceptions raised by OneSidedKron while updating a parameter."""


class OneSidedKronError(Exception):
    """Base class for per-parameter optimizer errors."""


class ShapeError(OneSidedKronError, ValueError):
    """Gradient is not a matrix, or no longer matches the stored state."""


class NonFiniteGradientError(OneSidedKronError, FloatingPointError):
    """Gradient contains NaN or Inf."""


class StepError(OneSidedKronError):
    """One or more parameters failed during a step with fail_fast=False.

    Args:
        errors (dict): Maps parameter name to the exception it raised.
    """

    def __init__(self, errors):
        self.errors = dict(errors)
        names = ", ".join(self.errors)
        super().__init__(f"{len(self.errors)} parameter(s) failed to update: {names}")
