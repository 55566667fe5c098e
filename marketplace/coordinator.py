"""
Lifecycle coordinator: the match saga, delivery confirmation and recovery.

Committing a match touches four independent documents (Match,
Conversation, PackageRequest, TripOffer) and the store cannot update them
atomically. The saga therefore:

1. Serializes competing travelers on a single conditional write: inserting
   the Match under a unique key derived from the package.
2. Registers the new Match on its trip and package by bumping each
   record's ``version`` with a compare-and-set. Status syncs and owner
   edits are conditioned on the version they read, so none of them can act
   on a view of the Match set that misses a registered claim. A claim that
   finds its trip already completed, or its package edited out of
   compatibility, is withdrawn before anyone else can see it accepted.
3. Treats a registered Match as the durable record of intent. Every later
   step is idempotent and can be re-run by any caller.
4. Never rolls back an accepted Match. A failed step leaves work for
   ``reconcile_match``, which moves records forward from what the Match
   set says.

Package and trip statuses are recomputed from the Match set each time they
are written; they are never trusted to have been set correctly before.
"""

import logging
import time
from dataclasses import dataclass

from django.core.exceptions import PermissionDenied, ValidationError
from django.utils import timezone

from . import state_machines as sm
from .compatibility import pair_is_compatible
from .exceptions import (
    AlreadyMatched,
    EntityNotFound,
    MarketplaceError,
    PartialMatch,
    SelfMatch,
    StoreConflict,
    TransientStoreError,
    TripFull,
)
from .models import Conversation, Match
from .retry import call_with_retry, marketplace_setting
from .store import default_store

logger = logging.getLogger(__name__)


class SagaStep:
    """Progress markers for ``propose_match``, in execution order."""

    GUARDED = 'guarded'
    MATCH_CREATED = 'match_created'
    REGISTERED = 'registered'
    CONVERSATION_CREATED = 'conversation_created'
    STATUS_SYNCED = 'status_synced'

    ORDER = [GUARDED, MATCH_CREATED, REGISTERED, CONVERSATION_CREATED, STATUS_SYNCED]


@dataclass
class MatchOutcome:
    """Result of a saga run: the match and the last step known to be done."""

    match: Match
    last_step: str
    resumed: bool = False

    @property
    def complete(self):
        return self.last_step == SagaStep.STATUS_SYNCED


@dataclass
class ReconcileReport:
    """What the recovery pass found (and did) for one match."""

    match_id: int
    problems: list
    outcome: MatchOutcome = None
    error: str = ''


class LifecycleCoordinator:
    """
    Orchestrates match creation and the package/trip lifecycles.

    Instances hold no per-request state and may be shared across threads.
    """

    def __init__(self, store=None, sleep=time.sleep):
        self.store = store or default_store
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def propose_match(self, package_id, trip_id, traveler_uid):
        """
        Commit a match between a package and a traveler's trip.

        Re-invoking with the same arguments after a partial failure resumes
        the saga instead of starting over.

        Args:
            package_id: PackageRequest id
            trip_id: TripOffer id owned by the traveler
            traveler_uid: uid of the traveler making the offer

        Returns:
            MatchOutcome: the match and ``SagaStep.STATUS_SYNCED``

        Raises:
            ValidationError: Malformed request (nothing written)
            SelfMatch, AlreadyMatched, TripFull: Terminal conflicts
            PartialMatch: The match exists but a later step kept failing
        """
        package = self._read('packages', package_id)
        trip = self._read('trips', trip_id)

        if trip.owner_id != traveler_uid:
            raise ValidationError({
                'trip': 'You can only offer one of your own trips.'
            })

        existing = self._find_claim(package.pk)
        if existing is not None:
            if self._same_triple(existing, trip.pk, traveler_uid):
                logger.info(
                    f"Resuming match {existing.pk} for package {package.pk}, "
                    f"trip {trip.pk}, traveler {traveler_uid}"
                )
                return self._resume(existing, SagaStep.MATCH_CREATED, resumed=True)
            logger.warning(
                f"Package {package.pk} already claimed by match {existing.pk}; "
                f"rejecting traveler {traveler_uid} (trip {trip.pk})"
            )
            raise AlreadyMatched()

        self._guard(package, trip, traveler_uid)
        match = self._claim(package, trip, traveler_uid)

        logger.info(
            f"Match {match.pk} created: package {package.pk} "
            f"(sender {package.owner_id}) with trip {trip.pk} (traveler {traveler_uid})"
        )
        return self._resume(match, SagaStep.MATCH_CREATED)

    def confirm_delivery(self, match_id, actor_uid=None):
        """
        Mark a match delivered and complete the records it references.

        The trip only completes once its last outstanding match completes.
        Confirming an already-completed match is a no-op apart from
        re-syncing statuses.

        Args:
            match_id: Match id
            actor_uid: When given, must be one of the match participants

        Returns:
            Match: the completed match

        Raises:
            PermissionDenied: If ``actor_uid`` is not a participant
            PartialMatch: If an unfinished saga could not be completed first
        """
        match = self._read('matches', match_id)

        if actor_uid is not None and actor_uid not in match.participants():
            logger.warning(
                f"User {actor_uid} tried to confirm delivery of match {match.pk} "
                f"they are not part of"
            )
            raise PermissionDenied('Only the sender or the traveler can confirm delivery.')

        if match.status == sm.MATCH_PENDING:
            # Never complete a match whose saga has not finished
            self._resume(match, SagaStep.MATCH_CREATED, resumed=True)
            match = self._read('matches', match.pk)

        if match.status != sm.MATCH_COMPLETED:
            sm.check_transition('matches', match.status, sm.MATCH_COMPLETED)
            try:
                self._write(
                    lambda: self.store.patch(
                        'matches',
                        match.pk,
                        {
                            'status': sm.MATCH_COMPLETED,
                            'completed_at': timezone.now(),
                            # Frees the trip capacity slot
                            'slot_key': None,
                        },
                        expected={'status': sm.MATCH_ACCEPTED},
                    ),
                    f'complete match {match.pk}',
                )
            except StoreConflict:
                current = self._read('matches', match.pk)
                if current.status != sm.MATCH_COMPLETED:
                    raise
                logger.info(f"Match {match.pk} was completed concurrently")
            else:
                logger.info(f"Delivery confirmed for match {match.pk} by {actor_uid or 'system'}")

        self._sync_package(match.package_id)
        self._sync_trip(match.trip_id)
        return self._read('matches', match.pk)

    def reconcile_match(self, match_id):
        """
        Forward-recover one match.

        Creates a missing conversation, accepts a pending match and
        re-derives package and trip status. Safe to run at any time, from
        any process, any number of times.

        Returns:
            MatchOutcome

        Raises:
            PartialMatch: A step kept failing; the match is left for later
            TripFull, ValidationError: A pending claim lost and was withdrawn
        """
        match = self._read('matches', match_id)

        if match.status == sm.MATCH_COMPLETED:
            try:
                self._ensure_conversation(match)
                self._sync_package(match.package_id)
                self._sync_trip(match.trip_id)
            except (TransientStoreError, StoreConflict) as e:
                logger.error(f"Completed match {match.pk} could not be re-synced: {e}")
                raise PartialMatch(match.pk, SagaStep.REGISTERED, cause=e) from e
            return MatchOutcome(match, SagaStep.STATUS_SYNCED, resumed=True)

        return self._resume(match, SagaStep.MATCH_CREATED, resumed=True)

    def find_unfinished(self):
        """
        List matches whose saga did not fully land.

        Returns:
            list: ReconcileReport entries (no writes performed)
        """
        reports = []
        matches = call_with_retry(
            lambda: self.store.query('matches', order_by=['created_at', 'id']),
            'list matches',
            sleep=self.sleep,
        )
        for match in matches:
            try:
                problems = self._problems(match)
            except MarketplaceError as e:
                logger.error(f"Could not inspect match {match.pk}: {e}")
                reports.append(ReconcileReport(match.pk, ['unreadable'], error=str(e)))
                continue
            if problems:
                reports.append(ReconcileReport(match.pk, problems))
        return reports

    def reconcile_all(self, dry_run=False):
        """
        Background reconciliation pass over every unfinished match.

        A match that cannot be repaired is recorded on its report and the
        pass moves on to the next one.

        Args:
            dry_run: Only report what would be repaired

        Returns:
            list: ReconcileReport per unfinished match
        """
        reports = self.find_unfinished()
        if dry_run:
            return reports

        for report in reports:
            try:
                report.outcome = self.reconcile_match(report.match_id)
            except (MarketplaceError, ValidationError) as e:
                report.error = str(e)
                logger.error(f"Reconciliation of match {report.match_id} incomplete: {e}")
        return reports

    # ------------------------------------------------------------------
    # Saga steps
    # ------------------------------------------------------------------

    def _guard(self, package, trip, traveler_uid):
        """Re-check availability against fresh reads right before the claim."""
        if package.owner_id == traveler_uid:
            raise SelfMatch()

        if not pair_is_compatible(package, trip):
            raise ValidationError(
                'This trip does not cover the package route or arrives after its deadline.'
            )

        if package.status != sm.PACKAGE_PENDING:
            raise AlreadyMatched()

        if trip.status == sm.TRIP_COMPLETED:
            raise TripFull('This trip has already been completed.')

        if self._free_slot(trip) is None:
            raise TripFull()

    def _claim(self, package, trip, traveler_uid):
        """
        Insert the Match under the package's claim key and a free trip slot.

        Whoever inserts first owns the package. A lost slot (another package
        booked on the same trip at the same moment) is re-picked a bounded
        number of times.
        """
        for _ in range(marketplace_setting('SLOT_RETRY_LIMIT')):
            slot_key = self._free_slot(trip)
            if slot_key is None:
                raise TripFull()

            fields = {
                'package_id': package.pk,
                'trip_id': trip.pk,
                'traveler_id': traveler_uid,
                'sender_id': package.owner_id,
                'status': sm.MATCH_PENDING,
                'claim_key': Match.claim_key_for(package.pk),
                'slot_key': slot_key,
            }
            try:
                return self._write(
                    lambda: self.store.create_if_absent('matches', **fields),
                    f'claim package {package.pk}',
                )
            except StoreConflict:
                winner = self._find_claim(package.pk)
                if winner is not None:
                    if self._same_triple(winner, trip.pk, traveler_uid):
                        # An earlier attempt of ours landed before its reply was lost
                        return winner
                    logger.warning(
                        f"Traveler {traveler_uid} lost the race for package {package.pk} "
                        f"to match {winner.pk}"
                    )
                    raise AlreadyMatched()
                logger.info(f"Slot {slot_key} on trip {trip.pk} taken concurrently, re-picking")
                trip = self._read('trips', trip.pk)

        raise TripFull()

    def _resume(self, match, last_step, resumed=False):
        """Run the idempotent steps after the match exists."""
        try:
            if match.status == sm.MATCH_PENDING:
                self._register(match)
            last_step = SagaStep.REGISTERED
            self._ensure_conversation(match)
            last_step = SagaStep.CONVERSATION_CREATED
            match = self._sync_statuses(match)
            last_step = SagaStep.STATUS_SYNCED
        except (TransientStoreError, StoreConflict) as e:
            logger.error(
                f"Match {match.pk} left partially committed after step {last_step}: {e}",
                exc_info=True
            )
            raise PartialMatch(match.pk, last_step, cause=e) from e

        return MatchOutcome(match, last_step, resumed=resumed)

    def _register(self, match):
        """
        Bump the version of the match's trip, then of its package.

        Each bump is a compare-and-set on the version and status just read,
        and re-checks that the claim still fits the record. A claim whose
        trip completed, or whose package or trip was edited out of
        compatibility, is withdrawn.

        Raises:
            TripFull: The trip completed or shrank before the claim registered
            ValidationError: The pair stopped being compatible
            StoreConflict: Contention outlasted the retry limit
        """
        trip = self._bump_version('trips', match.trip_id, match, self._check_trip_still_open)
        self._bump_version(
            'packages',
            match.package_id,
            match,
            lambda claim, package: self._check_still_compatible(claim, package, trip),
        )
        logger.info(f"Match {match.pk} registered on trip {match.trip_id} and package {match.package_id}")

    def _bump_version(self, kind, pk, match, check):
        for _ in range(marketplace_setting('SLOT_RETRY_LIMIT')):
            record = self._read(kind, pk)
            check(match, record)
            try:
                self._write(
                    lambda: self.store.patch(
                        kind,
                        pk,
                        {'version': record.version + 1},
                        expected={'status': record.status, 'version': record.version},
                    ),
                    f'register match {match.pk} on {kind} {pk}',
                )
            except StoreConflict:
                logger.info(f"{kind} {pk} changed while registering match {match.pk}, re-reading")
                continue
            return self._read(kind, pk)

        raise StoreConflict(f'Could not register match {match.pk} on {kind} {pk}.')

    def _check_trip_still_open(self, match, trip):
        if trip.status == sm.TRIP_COMPLETED:
            self._withdraw(match, f'trip {trip.pk} completed first')
            raise TripFull('This trip has already been completed.')
        if match.slot_index is None or match.slot_index >= trip.capacity:
            self._withdraw(match, f'trip {trip.pk} capacity is now {trip.capacity}')
            raise TripFull()

    def _check_still_compatible(self, match, package, trip):
        if not pair_is_compatible(package, trip):
            self._withdraw(match, f'package {package.pk} or trip {trip.pk} was edited')
            raise ValidationError(
                'This trip does not cover the package route or arrives after its deadline.'
            )

    def _withdraw(self, match, reason):
        """
        Delete a pending match that lost to a concurrent change.

        The match was never registered, so nothing has been derived from it
        and its package claim is released for other travelers.
        """
        logger.warning(f"Withdrawing pending match {match.pk}: {reason}")
        for conversation in self._query('conversations', match_id=match.pk):
            try:
                self._write(
                    lambda: self.store.delete('conversations', conversation.pk),
                    f'delete conversation {conversation.pk}',
                )
            except EntityNotFound:
                pass
        try:
            self._write(
                lambda: self.store.delete('matches', match.pk, expected={'status': sm.MATCH_PENDING}),
                f'withdraw match {match.pk}',
            )
        except EntityNotFound:
            logger.info(f"Match {match.pk} was already withdrawn")

    def _ensure_conversation(self, match):
        """Create the match's conversation unless it already exists."""
        existing = self._query('conversations', match_id=match.pk)
        if existing:
            return existing[0]

        low, high = Conversation.ordered_pair(match.traveler_id, match.sender_id)
        try:
            conversation = self._write(
                lambda: self.store.create_if_absent(
                    'conversations',
                    participant_low_id=low,
                    participant_high_id=high,
                    match_id=match.pk,
                    package_id=match.package_id,
                    trip_id=match.trip_id,
                ),
                f'create conversation for match {match.pk}',
            )
        except StoreConflict:
            return self._query('conversations', match_id=match.pk)[0]

        logger.info(f"Conversation {conversation.pk} opened for match {match.pk}")
        return conversation

    def _sync_statuses(self, match):
        """Accept the match, then derive package and trip status from it."""
        if match.status == sm.MATCH_PENDING:
            try:
                self._write(
                    lambda: self.store.patch(
                        'matches',
                        match.pk,
                        {'status': sm.MATCH_ACCEPTED, 'accepted_at': timezone.now()},
                        expected={'status': sm.MATCH_PENDING},
                    ),
                    f'accept match {match.pk}',
                )
            except StoreConflict:
                logger.info(f"Match {match.pk} was accepted concurrently")
            match = self._read('matches', match.pk)

        self._sync_package(match.package_id)
        self._sync_trip(match.trip_id)
        return match

    def _sync_package(self, package_id):
        return self._sync('packages', package_id, 'package_id', sm.derive_package_status)

    def _sync_trip(self, trip_id):
        return self._sync('trips', trip_id, 'trip_id', sm.derive_trip_status)

    def _sync(self, kind, pk, match_field, derive):
        """
        Walk a record's status forward to what its matches imply, one legal
        step at a time.

        The record is read before its matches and each step is a
        compare-and-set on the status and version read. A claim registered
        in between bumps the version, so the step is re-derived from the new
        match set instead of landing on a stale one.
        """
        # One pass per status on the chain, plus room for concurrent writers
        passes = len(sm.TRANSITIONS[kind]) + marketplace_setting('SLOT_RETRY_LIMIT')
        for _ in range(passes):
            record = self._read(kind, pk)
            matches = self._query('matches', **{match_field: pk})
            step = sm.next_status_towards(kind, record.status, derive(record.status, matches))
            if step is None:
                return record

            sm.check_transition(kind, record.status, step)
            try:
                self._write(
                    lambda: self.store.patch(
                        kind,
                        pk,
                        {'status': step, 'version': record.version + 1},
                        expected={'status': record.status, 'version': record.version},
                    ),
                    f'move {kind} {pk} to {step}',
                )
                logger.info(f"{kind} {pk}: {record.status} -> {step}")
            except StoreConflict:
                logger.info(f"{kind} {pk} changed concurrently, re-deriving")

        raise StoreConflict(f'{kind} {pk} kept changing while its status was synced.')

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _problems(self, match):
        problems = []
        if not self._query('conversations', match_id=match.pk):
            problems.append('missing_conversation')
        if match.status == sm.MATCH_PENDING:
            problems.append('match_not_accepted')

        package = self._read('packages', match.package_id)
        package_target = sm.derive_package_status(
            package.status, self._query('matches', package_id=match.package_id)
        )
        if package.status != package_target:
            problems.append('package_status_stale')

        trip = self._read('trips', match.trip_id)
        trip_target = sm.derive_trip_status(
            trip.status, self._query('matches', trip_id=match.trip_id)
        )
        if trip.status != trip_target:
            problems.append('trip_status_stale')
        return problems

    def _free_slot(self, trip):
        held = {
            match.slot_key
            for match in self._query('matches', trip_id=trip.pk, slot_key__isnull=False)
        }
        for slot in range(trip.capacity):
            key = Match.slot_key_for(trip.pk, slot)
            if key not in held:
                return key
        return None

    def _find_claim(self, package_id):
        claims = self._query('matches', claim_key=Match.claim_key_for(package_id))
        return claims[0] if claims else None

    @staticmethod
    def _same_triple(match, trip_id, traveler_uid):
        return match.trip_id == trip_id and match.traveler_id == traveler_uid

    def _read(self, kind, pk):
        return call_with_retry(
            lambda: self.store.get(kind, pk), f'read {kind} {pk}', sleep=self.sleep
        )

    def _query(self, kind, **filters):
        return call_with_retry(
            lambda: self.store.query(kind, **filters), f'query {kind}', sleep=self.sleep
        )

    def _write(self, operation, description):
        return call_with_retry(operation, description, sleep=self.sleep)


coordinator = LifecycleCoordinator()
