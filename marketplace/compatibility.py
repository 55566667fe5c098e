"""
Compatibility filter: which trips can carry which packages.

``find_compatible`` is pure. It never touches the store, so it is safe to
call concurrently and repeatedly; the ``compatible_for_*`` helpers load a
candidate pool first and then defer to it.
"""

import logging

from . import state_machines as sm
from .models import PackageRequest, TripOffer
from .store import default_store

logger = logging.getLogger(__name__)


def pair_is_compatible(package, trip):
    """
    Check the route, date and ownership rules for one package/trip pair.

    Open status is not checked here; ``find_compatible`` applies it to the
    candidate side only.

    Returns:
        bool: True if the trip can carry the package
    """
    if package.route_key != trip.route_key:
        return False

    # The trip must arrive no later than the deadline; same day is fine
    if trip.date > package.deadline:
        return False

    return package.owner_uid != trip.owner_uid


def _split(anchor, candidate):
    if isinstance(anchor, PackageRequest) and isinstance(candidate, TripOffer):
        return anchor, candidate
    if isinstance(anchor, TripOffer) and isinstance(candidate, PackageRequest):
        return candidate, anchor
    return None


def find_compatible(anchor, candidates):
    """
    Return the candidates compatible with ``anchor``, oldest first.

    Works in both directions: a PackageRequest anchor keeps TripOffer
    candidates and vice versa. Candidates of the anchor's own kind are
    ignored.

    Rules:
    1. Same origin and destination (normalized, case-insensitive)
    2. Trip date on or before the package deadline
    3. Candidate is open (package pending, trip active)
    4. Candidate owner differs from anchor owner
    5. Ordered by created_at, then id

    Args:
        anchor: PackageRequest or TripOffer being matched
        candidates: Iterable of records of the other kind

    Returns:
        list: Compatible candidates
    """
    compatible = []
    for candidate in candidates:
        pair = _split(anchor, candidate)
        if pair is None:
            continue
        if not candidate.is_open():
            continue
        if pair_is_compatible(*pair):
            compatible.append(candidate)

    return sorted(compatible, key=lambda record: (record.created_at, record.pk))


def compatible_for_package(package, store=default_store):
    """
    Trips that could carry ``package``.

    Trips whose capacity slots are all held by outstanding matches are left
    out even while still listed as active.
    """
    trips = store.query(
        'trips',
        status=sm.TRIP_ACTIVE,
        origin__iexact=package.origin,
        destination__iexact=package.destination,
        date__lte=package.deadline,
    )
    if not trips:
        return []

    held = {}
    for match in store.query(
        'matches',
        trip_id__in=[trip.pk for trip in trips],
        slot_key__isnull=False,
    ):
        held[match.trip_id] = held.get(match.trip_id, 0) + 1

    available = [trip for trip in trips if held.get(trip.pk, 0) < trip.capacity]
    return find_compatible(package, available)


def compatible_for_trip(trip, store=default_store):
    """
    Packages ``trip`` could carry.

    Packages already claimed by a match are left out even if their stored
    status has not caught up yet, so a partially committed match never
    shows up as available.
    """
    packages = store.query(
        'packages',
        status=sm.PACKAGE_PENDING,
        origin__iexact=trip.origin,
        destination__iexact=trip.destination,
        deadline__gte=trip.date,
    )
    if not packages:
        return []

    claimed = {
        match.package_id
        for match in store.query(
            'matches',
            package_id__in=[package.pk for package in packages],
        )
    }
    if claimed:
        logger.debug(f"Trip {trip.pk}: hiding claimed packages {sorted(claimed)}")

    available = [package for package in packages if package.pk not in claimed]
    return find_compatible(trip, available)
