"""
Error taxonomy for matching and lifecycle coordination.

Validation problems are raised as Django ``ValidationError`` (the same way
the models' ``clean()`` methods raise them). Everything else derives from
``MarketplaceError`` and carries a stable ``code`` that the API layer
returns to clients verbatim.
"""


class MarketplaceError(Exception):
    """Base class for coordinator, aggregator and store errors."""

    code = 'marketplace_error'
    default_message = 'The request could not be completed.'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


# ============================================================================
# Store errors
# ============================================================================

class EntityNotFound(MarketplaceError):
    code = 'not_found'
    default_message = 'The requested record does not exist.'

    def __init__(self, kind, pk):
        self.kind = kind
        self.pk = pk
        super().__init__(f'No {kind} record with id {pk}.')


class StoreConflict(MarketplaceError):
    """A conditional write lost: the key already exists or a precondition failed."""

    code = 'store_conflict'
    default_message = 'A conditional write was rejected.'


class TransientStoreError(MarketplaceError):
    """The backing store is temporarily unavailable; the call may be retried."""

    code = 'store_unavailable'
    default_message = 'The store is temporarily unavailable. Please retry.'


# ============================================================================
# Conflicts (another actor won a race)
# ============================================================================

class AlreadyMatched(MarketplaceError):
    code = 'already_matched'
    default_message = 'This package is no longer available.'


class TripFull(MarketplaceError):
    code = 'trip_full'
    default_message = 'This trip has no remaining capacity.'


class TripBooked(MarketplaceError):
    code = 'trip_booked'
    default_message = 'This trip already carries packages and can no longer be changed.'


class SelfMatch(MarketplaceError):
    code = 'self_match'
    default_message = 'You cannot match your own package with your own trip.'


class DuplicateReview(MarketplaceError):
    code = 'duplicate_review'
    default_message = 'You have already reviewed this user for this shipment.'


class InvalidTransition(MarketplaceError):
    code = 'invalid_transition'
    default_message = 'This status change is not allowed.'


# ============================================================================
# Partial progress
# ============================================================================

class PartialMatch(MarketplaceError):
    """
    A saga step failed after the Match was durably created.

    The Match is never rolled back. Re-invoking ``propose_match`` with the
    same arguments, or running the reconciler, resumes from ``last_step``.
    """

    code = 'partial_match'
    default_message = 'The match was recorded but could not be fully completed.'

    def __init__(self, match_id, last_step, cause=None):
        self.match_id = match_id
        self.last_step = last_step
        self.cause = cause
        super().__init__(
            f'Match {match_id} stopped after step {last_step}: {cause}'
        )
