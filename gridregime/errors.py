"""Error kinds raised by the gridregime pipeline.

Failures local to one reduction unit or one chunk are recovered by the
pipeline and end up as "unclustered" rows. Failures that make a model
impossible to produce (unreadable input, too little valid data) propagate.
"""


class GridRegimeError(Exception):
    """Base exception for gridregime errors."""

    pass


class SourceError(GridRegimeError):
    """Raised when the array source cannot be opened or read."""

    pass


class ExtractionFailure(GridRegimeError):
    """Raised when a single reduction unit cannot be turned into a feature vector."""

    def __init__(self, unit_id: int, reason: str) -> None:
        self.unit_id = unit_id
        self.reason = reason
        super().__init__(f"Unit {unit_id}: {reason}")


class ChunkFailure(GridRegimeError):
    """Raised when a whole chunk of units cannot be processed."""

    def __init__(self, start: int, stop: int, reason: str) -> None:
        self.start = start
        self.stop = stop
        self.reason = reason
        super().__init__(f"Chunk [{start}, {stop}): {reason}")


class InsufficientData(GridRegimeError):
    """Raised when fewer valid feature vectors exist than the smallest candidate k."""

    def __init__(
        self,
        required: int,
        available: int,
        excluded: dict[str, int] | None = None,
    ) -> None:
        self.required = required
        self.available = available
        self.excluded = dict(excluded or {})

        message = (
            f"Need at least {required} valid feature vectors, "
            f"only {available} available"
        )
        if self.excluded:
            details = ", ".join(
                f"{count} {reason}" for reason, count in sorted(self.excluded.items())
            )
            message += f" (excluded: {details})"
        super().__init__(message)


class NonFiniteFeature(GridRegimeError):
    """Recorded when a feature vector holds an infinite or NaN component.

    The unit is excluded from fitting; this never aborts a run.
    """

    def __init__(self, unit_id: int, components: list[str] | None = None) -> None:
        self.unit_id = unit_id
        self.components = list(components or [])
        detail = f" in {', '.join(self.components)}" if self.components else ""
        super().__init__(f"Unit {unit_id}: non-finite feature{detail}")


class PipelineCancelled(GridRegimeError):
    """Raised when cancellation leaves nothing to build a model from."""

    pass
