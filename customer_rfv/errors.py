"""Exception types raised by the RFV segmentation engine.

Row-level problems (missing names, unparsable dates, zero amounts) are never
raised; they are counted by the aggregator. Storage batch failures are
reported as data by the persistence gateway. Only conditions that make a run
impossible to start surface as exceptions.
"""

from __future__ import annotations

from typing import Sequence


class RFVError(Exception):
    """Base class for errors raised by :mod:`customer_rfv`."""


class MappingIncompleteError(RFVError, ValueError):
    """Required canonical fields are not mapped to any source column."""

    def __init__(self, missing: Sequence[str], available: Sequence[str] = ()) -> None:
        self.missing = tuple(missing)
        self.available = tuple(available)
        message = "Column mapping incomplete; missing: " + ", ".join(self.missing)
        if self.available:
            message += f" (available columns: {', '.join(self.available)})"
        super().__init__(message)


class UnknownColumnError(RFVError, ValueError):
    """A mapping entry references a label that is not in the header row."""

    def __init__(self, labels: Sequence[str]) -> None:
        self.labels = tuple(labels)
        super().__init__(
            "Mapped columns not found in header: " + ", ".join(repr(l) for l in self.labels)
        )


class InputFileError(RFVError, ValueError):
    """The input spreadsheet cannot be read."""
