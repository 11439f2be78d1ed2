"""Processing state machine for media assets.

    uploaded -> processing -> ready | failed
    ready | failed -> processing      (explicit reprocess only)
"""

from reelpipe.modules.media.exceptions import ConcurrentRunError, InvalidStateTransitionError
from reelpipe.modules.media.models import AssetStatus

ALLOWED_TRANSITIONS: dict[AssetStatus, frozenset[AssetStatus]] = {
    AssetStatus.UPLOADED: frozenset({AssetStatus.PROCESSING}),
    AssetStatus.PROCESSING: frozenset({AssetStatus.READY, AssetStatus.FAILED}),
    AssetStatus.READY: frozenset(),
    AssetStatus.FAILED: frozenset(),
}

REPROCESS_TRANSITIONS: dict[AssetStatus, frozenset[AssetStatus]] = {
    AssetStatus.READY: frozenset({AssetStatus.PROCESSING}),
    AssetStatus.FAILED: frozenset({AssetStatus.PROCESSING}),
}

TERMINAL_STATUSES = frozenset({AssetStatus.READY, AssetStatus.FAILED})


def can_transition(current: AssetStatus, target: AssetStatus, reprocess: bool = False) -> bool:
    if target in ALLOWED_TRANSITIONS.get(current, frozenset()):
        return True
    return reprocess and target in REPROCESS_TRANSITIONS.get(current, frozenset())


def validate_transition(
    current: AssetStatus | str,
    target: AssetStatus | str,
    reprocess: bool = False,
) -> AssetStatus:
    """Check a status change and return the target status.

    Raises:
        ConcurrentRunError: If a new run is requested while one is in progress
        InvalidStateTransitionError: For any other disallowed change
    """
    current = AssetStatus(current)
    target = AssetStatus(target)

    if current == AssetStatus.PROCESSING and target == AssetStatus.PROCESSING:
        raise ConcurrentRunError()
    if not can_transition(current, target, reprocess=reprocess):
        raise InvalidStateTransitionError(current.value, target.value)
    return target


def clamp_progress(value: float) -> int:
    return int(min(100, max(0, round(value))))


def next_progress(current: int, proposed: float) -> int:
    """Progress never moves backwards within a run."""
    return max(current, clamp_progress(proposed))
