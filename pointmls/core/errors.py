"""
Error taxonomy of the MLS engine.

Degenerate geometry (flat gradients, samples outside the MLS support) is not an
exception: it is recovered locally and reported through result flags.
"""


class MlsError(Exception):
    pass


class InvalidArgument(MlsError, ValueError):
    """Malformed configuration or input; raised before any work is done."""


class Cancelled(MlsError):
    """The progress callback asked to stop. Partial results are discarded."""


class NumericFault(MlsError, ArithmeticError):
    """A non-finite value came out of finite inputs (implementation bug)."""
