"""Errors raised by the media state store and service."""


class MediaServiceError(Exception):
    """Base exception for media service errors."""

    pass


class AssetNotFoundError(MediaServiceError):
    """Raised when no media asset exists for an id."""

    pass


class AssetAlreadyExistsError(MediaServiceError):
    """Raised when a handoff reuses an existing asset id."""

    pass


class InvalidStateTransitionError(MediaServiceError):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move asset from '{current}' to '{target}'")
        self.current = current
        self.target = target


class ConcurrentRunError(InvalidStateTransitionError):
    """Raised when a run is requested for an asset that is already processing."""

    def __init__(self, current: str = "processing", target: str = "processing"):
        super().__init__(current, target)
        self.args = ("Asset is already being processed",)


class SourceMissingError(MediaServiceError):
    """Raised when the stored original needed for a run is gone."""

    pass


class AssetNotReadyError(MediaServiceError):
    """Raised when media is requested for an asset that is not ready."""

    def __init__(self, status: str):
        super().__init__(f"Asset is not ready (status: {status})")
        self.status = status


class StaleRunError(MediaServiceError):
    """Raised when a run writes to an asset after a newer run or an external
    failure has taken it over."""

    def __init__(self, asset_id, run: int):
        super().__init__(f"Run {run} of media asset {asset_id} is no longer current")
        self.asset_id = asset_id
        self.run = run
