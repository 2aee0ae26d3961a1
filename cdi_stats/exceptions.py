"""
Exceptions
==========

Error types raised by cdi_stats.

- LoadError: input table missing, unreadable, or missing expected columns
- InputError: invalid arguments or data for a modelling step
- ConvergenceError: optimizer failed to converge for a model fit

Advisory findings (overdispersion, VIF above threshold, unstable
coefficients) are not errors; they are issued as warnings and stored
on the result dictionaries.
"""
from __future__ import annotations


class CDIStatsError(Exception):
    """Base class for all cdi_stats errors."""


class LoadError(CDIStatsError):
    """Input file missing, unreadable, or not matching the expected schema."""


class InputError(CDIStatsError, ValueError):
    """Invalid input for a modelling or comparison step."""


class ConvergenceError(CDIStatsError, RuntimeError):
    """The optimizer did not converge for a model fit."""

    def __init__(self, message: str, model_name: str = "") -> None:
        super().__init__(message)
        self.model_name = model_name
