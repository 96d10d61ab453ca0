"""Error kinds raised by the scan.

``MalformedAlignment`` is recoverable (the scanner reloads reference data or
skips the alignment). ``UnsortedStream`` and ``EmptyTargetSet`` abort the run;
the CLI turns them into a one-line diagnostic and a non-zero exit code.
"""

from __future__ import annotations

from typing import Optional


class BambayesError(RuntimeError):
    """Base class for scan errors."""


class MalformedAlignment(BambayesError):
    """An alignment cannot be registered against the loaded reference window."""

    def __init__(
        self,
        message: str,
        *,
        read_name: str,
        reference_name: Optional[str],
        start: int,
        end: int,
    ) -> None:
        super().__init__(message)
        self.read_name = read_name
        self.reference_name = reference_name
        self.start = int(start)
        self.end = int(end)


class UnsortedStream(BambayesError):
    """The alignment stream went backwards."""

    def __init__(
        self,
        *,
        reference_name: Optional[str],
        position: int,
        previous_position: int,
        read_name: str = "",
    ) -> None:
        super().__init__(
            f"Alignments are not coordinate-sorted: {read_name or 'alignment'} at "
            f"{reference_name}:{position + 1} follows an alignment starting at "
            f"{reference_name}:{previous_position + 1}. "
            "Sort the BAM first (samtools sort)."
        )
        self.reference_name = reference_name
        self.position = int(position)
        self.previous_position = int(previous_position)
        self.read_name = read_name


class EmptyTargetSet(BambayesError):
    """No target interval lies on a reference sequence with loaded data."""
