"""
Status state machines for packages, trips and matches.

Statuses on PackageRequest and TripOffer are a cache of a query over the
Match set. The derive_* functions compute what that cache should say; the
coordinator applies the result only through ``check_transition`` so a
status can never move backwards.
"""

from .exceptions import InvalidTransition


PACKAGE_PENDING = 'pending'
PACKAGE_IN_PROGRESS = 'in_progress'
PACKAGE_COMPLETED = 'completed'

TRIP_ACTIVE = 'active'
TRIP_IN_PROGRESS = 'in_progress'
TRIP_COMPLETED = 'completed'

MATCH_PENDING = 'pending'
MATCH_ACCEPTED = 'accepted'
MATCH_COMPLETED = 'completed'


PACKAGE_TRANSITIONS = {
    PACKAGE_PENDING: [PACKAGE_IN_PROGRESS],
    PACKAGE_IN_PROGRESS: [PACKAGE_COMPLETED],
    PACKAGE_COMPLETED: [],  # Terminal state
}

TRIP_TRANSITIONS = {
    TRIP_ACTIVE: [TRIP_IN_PROGRESS],
    TRIP_IN_PROGRESS: [TRIP_COMPLETED],
    TRIP_COMPLETED: [],  # Terminal state
}

MATCH_TRANSITIONS = {
    MATCH_PENDING: [MATCH_ACCEPTED],
    MATCH_ACCEPTED: [MATCH_COMPLETED],
    MATCH_COMPLETED: [],  # Terminal state
}

TRANSITIONS = {
    'packages': PACKAGE_TRANSITIONS,
    'trips': TRIP_TRANSITIONS,
    'matches': MATCH_TRANSITIONS,
}


def can_transition(kind, current_status, new_status):
    """
    Validate a status change for a record of the given kind.

    Same-status is always allowed (no-op).

    Returns:
        tuple: (is_valid: bool, error_message: str or None)
    """
    table = TRANSITIONS[kind]

    if current_status == new_status:
        return True, None

    if current_status not in table:
        return False, f'Unknown {kind} status "{current_status}".'

    if not table[current_status]:
        return False, f'Cannot modify a {current_status} record.'

    if new_status in table[current_status]:
        return True, None

    return False, f'Invalid status transition from {current_status} to {new_status}.'


def check_transition(kind, current_status, new_status):
    """Raise InvalidTransition unless ``can_transition`` allows the change."""
    is_valid, error = can_transition(kind, current_status, new_status)
    if not is_valid:
        raise InvalidTransition(error)


def next_status_towards(kind, current_status, target_status):
    """
    Return the single next status on the path from current to target.

    Used when a derived status is more than one step ahead of the stored
    one (for example a package still ``pending`` whose match already
    completed): the record is walked forward one legal step at a time.
    Returns None when the target is not reachable.
    """
    if current_status == target_status:
        return None
    table = TRANSITIONS[kind]
    frontier = [(current_status, None)]
    seen = {current_status}
    while frontier:
        status, first_step = frontier.pop(0)
        for candidate in table.get(status, []):
            step = first_step or candidate
            if candidate == target_status:
                return step
            if candidate not in seen:
                seen.add(candidate)
                frontier.append((candidate, step))
    return None


def derive_package_status(current_status, matches):
    """
    Compute a package's status from the Matches that reference it.

    Args:
        current_status: status currently stored on the package
        matches: iterable of Match records for the package

    Returns:
        str: completed if a referencing match completed, in_progress if
        exactly one is accepted, otherwise the current status. The result
        never precedes ``current_status``.
    """
    statuses = [match.status for match in matches]

    if MATCH_COMPLETED in statuses:
        derived = PACKAGE_COMPLETED
    elif statuses.count(MATCH_ACCEPTED) == 1:
        derived = PACKAGE_IN_PROGRESS
    else:
        derived = current_status

    return _monotone(PACKAGE_TRANSITIONS, current_status, derived)


def derive_trip_status(current_status, matches):
    """
    Compute a trip's status from the Matches booked on it.

    A trip is in progress while any accepted match is outstanding and
    becomes completed when it has matches and every one of them completed.
    """
    statuses = [match.status for match in matches]

    if statuses and all(status == MATCH_COMPLETED for status in statuses):
        derived = TRIP_COMPLETED
    elif MATCH_ACCEPTED in statuses:
        derived = TRIP_IN_PROGRESS
    else:
        derived = current_status

    return _monotone(TRIP_TRANSITIONS, current_status, derived)


def _monotone(table, current_status, derived_status):
    order = _rank(table)
    if order.get(derived_status, -1) < order.get(current_status, -1):
        return current_status
    return derived_status


def _rank(table):
    # Every table here is a single chain; rank statuses along it.
    targets = {status for nexts in table.values() for status in nexts}
    start = next(status for status in table if status not in targets)
    ranks = {}
    status, position = start, 0
    while status is not None:
        ranks[status] = position
        position += 1
        nexts = table[status]
        status = nexts[0] if nexts else None
    return ranks
