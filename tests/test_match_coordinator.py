"""
Test suite for the match saga: propose_match, recovery and races.
"""

from unittest import mock

from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings

from marketplace.compatibility import compatible_for_trip
from marketplace.coordinator import LifecycleCoordinator, ReconcileReport, SagaStep
from marketplace.exceptions import (
    AlreadyMatched,
    EntityNotFound,
    PartialMatch,
    SelfMatch,
    TransientStoreError,
    TripFull,
)
from marketplace.models import Conversation, Match
from marketplace.store import EntityStore, default_store
from marketplace.tests.factories import (
    DEADLINE,
    FlakyStore,
    make_package,
    make_trip,
    make_user,
    no_sleep,
)


class ProposeMatchTests(TestCase):
    """Successful match commits."""

    def setUp(self):
        self.coordinator = LifecycleCoordinator(sleep=no_sleep)
        self.sender = make_user('sender')
        self.traveler = make_user('traveler')
        self.package = make_package(self.sender)
        self.trip = make_trip(self.traveler)

    def test_milan_tunis_match_commits_every_record(self):
        outcome = self.coordinator.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        self.assertEqual(outcome.last_step, SagaStep.STATUS_SYNCED)
        self.assertTrue(outcome.complete)
        self.assertFalse(outcome.resumed)

        match = outcome.match
        self.assertEqual(match.status, 'accepted')
        self.assertIsNotNone(match.accepted_at)
        self.assertEqual(match.sender_id, self.sender.uid)
        self.assertEqual(match.traveler_id, self.traveler.uid)

        conversation = Conversation.objects.get(match=match)
        self.assertEqual(
            set(conversation.participant_uids), {self.sender.uid, self.traveler.uid}
        )
        self.assertEqual(conversation.package_id, self.package.pk)
        self.assertEqual(conversation.trip_id, self.trip.pk)

        self.package.refresh_from_db()
        self.trip.refresh_from_db()
        self.assertEqual(self.package.status, 'in_progress')
        self.assertEqual(self.trip.status, 'in_progress')

    def test_repeating_a_completed_proposal_is_idempotent(self):
        first = self.coordinator.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)
        second = self.coordinator.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        self.assertEqual(first.match.pk, second.match.pk)
        self.assertTrue(second.resumed)
        self.assertEqual(Match.objects.count(), 1)
        self.assertEqual(Conversation.objects.count(), 1)

    def test_trip_with_capacity_takes_several_packages(self):
        trip = make_trip(self.traveler, capacity=2)
        other = make_package(make_user('other'))

        first = self.coordinator.propose_match(self.package.pk, trip.pk, self.traveler.uid)
        second = self.coordinator.propose_match(other.pk, trip.pk, self.traveler.uid)

        self.assertNotEqual(first.match.slot_key, second.match.slot_key)
        trip.refresh_from_db()
        self.assertEqual(trip.status, 'in_progress')
        self.assertEqual(Conversation.objects.count(), 2)

    def test_in_progress_trip_with_free_slot_can_still_match(self):
        trip = make_trip(self.traveler, capacity=2)
        self.coordinator.propose_match(self.package.pk, trip.pk, self.traveler.uid)
        trip.refresh_from_db()
        self.assertEqual(trip.status, 'in_progress')

        other = make_package(make_user('other'))
        outcome = self.coordinator.propose_match(other.pk, trip.pk, self.traveler.uid)
        self.assertEqual(outcome.match.status, 'accepted')


class ProposeMatchRejectionTests(TestCase):
    """Validation and conflict errors leave the store untouched."""

    def setUp(self):
        self.coordinator = LifecycleCoordinator(sleep=no_sleep)
        self.sender = make_user('sender')
        self.traveler = make_user('traveler')
        self.package = make_package(self.sender)
        self.trip = make_trip(self.traveler)

    def test_self_match_rejected(self):
        own_trip = make_trip(self.sender)
        with self.assertRaises(SelfMatch):
            self.coordinator.propose_match(self.package.pk, own_trip.pk, self.sender.uid)
        self.assertEqual(Match.objects.count(), 0)

    def test_traveler_must_own_the_trip(self):
        intruder = make_user('intruder')
        with self.assertRaises(ValidationError):
            self.coordinator.propose_match(self.package.pk, self.trip.pk, intruder.uid)
        self.assertEqual(Match.objects.count(), 0)

    def test_incompatible_pair_rejected(self):
        late_trip = make_trip(self.traveler, travel_date=DEADLINE.replace(day=25))
        with self.assertRaises(ValidationError):
            self.coordinator.propose_match(self.package.pk, late_trip.pk, self.traveler.uid)
        self.assertEqual(Match.objects.count(), 0)

    def test_missing_records(self):
        with self.assertRaises(EntityNotFound):
            self.coordinator.propose_match(999999, self.trip.pk, self.traveler.uid)

    def test_second_traveler_gets_already_matched(self):
        self.coordinator.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        rival = make_user('rival')
        rival_trip = make_trip(rival)
        with self.assertRaises(AlreadyMatched) as ctx:
            self.coordinator.propose_match(self.package.pk, rival_trip.pk, rival.uid)

        self.assertEqual(ctx.exception.message, 'This package is no longer available.')
        self.assertEqual(Match.objects.filter(package=self.package).count(), 1)
        rival_trip.refresh_from_db()
        self.assertEqual(rival_trip.status, 'active')

    def test_full_trip_rejected(self):
        self.coordinator.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        other = make_package(make_user('other'))
        with self.assertRaises(TripFull):
            self.coordinator.propose_match(other.pk, self.trip.pk, self.traveler.uid)

        other.refresh_from_db()
        self.assertEqual(other.status, 'pending')
        self.assertEqual(Match.objects.count(), 1)

    def test_completed_trip_rejected(self):
        default_store.patch('trips', self.trip.pk, {'status': 'in_progress'})
        default_store.patch('trips', self.trip.pk, {'status': 'completed'})
        with self.assertRaises(TripFull):
            self.coordinator.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)


class ConcurrentClaimTests(TestCase):
    """The losing traveler of a race is stopped by the conditional write."""

    def setUp(self):
        self.coordinator = LifecycleCoordinator(sleep=no_sleep)
        self.sender = make_user('sender')
        self.winner = make_user('winner')
        self.loser = make_user('loser')
        self.package = make_package(self.sender)
        self.winner_trip = make_trip(self.winner)
        self.loser_trip = make_trip(self.loser)

    def _winner_claims_without_syncing(self):
        return default_store.create_if_absent(
            'matches',
            package_id=self.package.pk,
            trip_id=self.winner_trip.pk,
            traveler_id=self.winner.uid,
            sender_id=self.sender.uid,
            claim_key=Match.claim_key_for(self.package.pk),
            slot_key=Match.slot_key_for(self.winner_trip.pk, 0),
        )

    def test_loser_rejected_by_claim_key(self):
        # The loser read the package as pending and found no claim, then the
        # winner's insert landed before the loser's.
        winning = self._winner_claims_without_syncing()
        with mock.patch.object(
            self.coordinator, '_find_claim', side_effect=[None, winning]
        ):
            with self.assertRaises(AlreadyMatched):
                self.coordinator.propose_match(
                    self.package.pk, self.loser_trip.pk, self.loser.uid
                )

        self.assertEqual(Match.objects.filter(package=self.package).count(), 1)
        self.assertEqual(Match.objects.get(package=self.package).traveler_id, self.winner.uid)
        self.assertFalse(Conversation.objects.filter(trip=self.loser_trip).exists())

    def test_claimed_package_rejected_even_if_status_lags(self):
        self._winner_claims_without_syncing()
        self.package.refresh_from_db()
        self.assertEqual(self.package.status, 'pending')

        with self.assertRaises(AlreadyMatched):
            self.coordinator.propose_match(self.package.pk, self.loser_trip.pk, self.loser.uid)

    def test_lost_slot_is_repicked(self):
        trip = make_trip(self.winner, capacity=2)
        other = make_package(make_user('other'))
        # Another package grabs slot 0 between the slot read and the insert
        default_store.create_if_absent(
            'matches',
            package_id=other.pk,
            trip_id=trip.pk,
            traveler_id=self.winner.uid,
            sender_id=other.owner_id,
            claim_key=Match.claim_key_for(other.pk),
            slot_key=Match.slot_key_for(trip.pk, 0),
        )
        stale_slot = Match.slot_key_for(trip.pk, 0)
        fresh_slot = Match.slot_key_for(trip.pk, 1)
        with mock.patch.object(
            self.coordinator, '_free_slot', side_effect=[fresh_slot, stale_slot, fresh_slot]
        ):
            outcome = self.coordinator.propose_match(self.package.pk, trip.pk, self.winner.uid)

        self.assertEqual(outcome.match.slot_key, fresh_slot)


@override_settings(MARKETPLACE={'RETRY_ATTEMPTS': 3, 'RETRY_BASE_DELAY': 0, 'RETRY_MAX_DELAY': 0})
class PartialFailureTests(TestCase):
    """A failed step leaves the match in place and a retry finishes it."""

    def setUp(self):
        self.sender = make_user('sender')
        self.traveler = make_user('traveler')
        self.package = make_package(self.sender)
        self.trip = make_trip(self.traveler)

    def test_conversation_failure_raises_partial_match(self):
        flaky = LifecycleCoordinator(
            store=FlakyStore([('create_if_absent', 'conversations')]), sleep=no_sleep
        )
        with self.assertRaises(PartialMatch) as ctx:
            flaky.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        match = Match.objects.get(package=self.package)
        self.assertEqual(ctx.exception.match_id, match.pk)
        self.assertEqual(ctx.exception.last_step, SagaStep.REGISTERED)
        self.assertEqual(ctx.exception.code, 'partial_match')
        self.assertEqual(match.status, 'pending')
        self.assertFalse(Conversation.objects.exists())

        # The half-committed package is not offered to anyone else
        self.assertEqual(compatible_for_trip(make_trip(make_user('other'))), [])

    def test_retry_resumes_same_match(self):
        flaky = LifecycleCoordinator(
            store=FlakyStore([('create_if_absent', 'conversations')]), sleep=no_sleep
        )
        with self.assertRaises(PartialMatch) as ctx:
            flaky.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        outcome = LifecycleCoordinator(sleep=no_sleep).propose_match(
            self.package.pk, self.trip.pk, self.traveler.uid
        )

        self.assertTrue(outcome.resumed)
        self.assertEqual(outcome.match.pk, ctx.exception.match_id)
        self.assertEqual(outcome.match.status, 'accepted')
        self.assertEqual(Match.objects.count(), 1)
        self.assertEqual(Conversation.objects.count(), 1)
        self.package.refresh_from_db()
        self.assertEqual(self.package.status, 'in_progress')

    def test_status_sync_failure_reports_conversation_step(self):
        flaky = LifecycleCoordinator(
            store=FlakyStore([('patch', 'matches')]), sleep=no_sleep
        )
        with self.assertRaises(PartialMatch) as ctx:
            flaky.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        self.assertEqual(ctx.exception.last_step, SagaStep.CONVERSATION_CREATED)
        self.assertEqual(Match.objects.get().status, 'pending')
        self.trip.refresh_from_db()
        self.assertEqual(self.trip.status, 'active')

        outcome = LifecycleCoordinator(sleep=no_sleep).reconcile_match(ctx.exception.match_id)
        self.assertEqual(outcome.last_step, SagaStep.STATUS_SYNCED)
        self.trip.refresh_from_db()
        self.assertEqual(self.trip.status, 'in_progress')

    def test_transient_failures_within_budget_are_retried(self):
        sleeps = []
        store = FlakyStore([('patch', 'packages')], failures=2)
        coordinator = LifecycleCoordinator(store=store, sleep=sleeps.append)

        outcome = coordinator.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        self.assertEqual(outcome.last_step, SagaStep.STATUS_SYNCED)
        self.assertEqual(store.failed_calls, 2)
        self.assertEqual(len(sleeps), 2)


class ReconcileTests(TestCase):

    def setUp(self):
        self.coordinator = LifecycleCoordinator(sleep=no_sleep)
        self.sender = make_user('sender')
        self.traveler = make_user('traveler')
        self.package = make_package(self.sender)
        self.trip = make_trip(self.traveler)
        self.match = default_store.create_if_absent(
            'matches',
            package_id=self.package.pk,
            trip_id=self.trip.pk,
            traveler_id=self.traveler.uid,
            sender_id=self.sender.uid,
            claim_key=Match.claim_key_for(self.package.pk),
            slot_key=Match.slot_key_for(self.trip.pk, 0),
        )

    def test_find_unfinished_reports_problems(self):
        reports = self.coordinator.find_unfinished()
        self.assertEqual(len(reports), 1)
        self.assertEqual(reports[0].match_id, self.match.pk)
        self.assertIn('missing_conversation', reports[0].problems)
        self.assertIn('match_not_accepted', reports[0].problems)

    def test_reconcile_all_repairs_and_is_repeatable(self):
        reports = self.coordinator.reconcile_all()
        self.assertEqual(len(reports), 1)
        self.assertEqual(reports[0].outcome.last_step, SagaStep.STATUS_SYNCED)

        self.assertEqual(self.coordinator.find_unfinished(), [])
        self.assertEqual(self.coordinator.reconcile_all(), [])
        self.assertEqual(Conversation.objects.count(), 1)

    def test_dry_run_writes_nothing(self):
        self.coordinator.reconcile_all(dry_run=True)
        self.match.refresh_from_db()
        self.assertEqual(self.match.status, 'pending')
        self.assertFalse(Conversation.objects.exists())


class ReconcilePassTests(TestCase):
    """One match that cannot be repaired does not stop the others."""

    class ConversationOutageStore(EntityStore):
        def __init__(self, match_id):
            self.match_id = match_id

        def create_if_absent(self, kind, **fields):
            if kind == 'conversations' and fields.get('match_id') == self.match_id:
                raise TransientStoreError('conversation store unavailable')
            return super().create_if_absent(kind, **fields)

    def setUp(self):
        self.traveler = make_user('traveler')
        self.broken = self._unsynced_match(make_user('first'))
        Match.objects.filter(pk=self.broken.pk).update(status='completed', slot_key=None)
        self.healthy = self._unsynced_match(make_user('second'))

    def _unsynced_match(self, sender):
        package = make_package(sender)
        trip = make_trip(self.traveler)
        return default_store.create_if_absent(
            'matches',
            package_id=package.pk,
            trip_id=trip.pk,
            traveler_id=self.traveler.uid,
            sender_id=sender.uid,
            claim_key=Match.claim_key_for(package.pk),
            slot_key=Match.slot_key_for(trip.pk, 0),
        )

    def test_failing_completed_match_does_not_abort_pass(self):
        coordinator = LifecycleCoordinator(
            store=self.ConversationOutageStore(self.broken.pk), sleep=no_sleep
        )

        reports = coordinator.reconcile_all()

        self.assertEqual([r.match_id for r in reports], [self.broken.pk, self.healthy.pk])
        self.assertIsNone(reports[0].outcome)
        self.assertIn('conversation store unavailable', reports[0].error)
        self.assertEqual(reports[1].outcome.last_step, SagaStep.STATUS_SYNCED)
        self.assertEqual(reports[1].error, '')

        self.healthy.refresh_from_db()
        self.assertEqual(self.healthy.status, 'accepted')
        self.assertTrue(Conversation.objects.filter(match=self.healthy).exists())

    def test_completed_match_failure_is_reported_as_partial(self):
        coordinator = LifecycleCoordinator(
            store=self.ConversationOutageStore(self.broken.pk), sleep=no_sleep
        )
        with self.assertRaises(PartialMatch) as ctx:
            coordinator.reconcile_match(self.broken.pk)
        self.assertEqual(ctx.exception.match_id, self.broken.pk)

    def test_vanished_match_does_not_abort_pass(self):
        coordinator = LifecycleCoordinator(sleep=no_sleep)
        reports = [
            ReconcileReport(999999, ['missing_conversation']),
            ReconcileReport(self.healthy.pk, ['missing_conversation']),
        ]
        with mock.patch.object(coordinator, 'find_unfinished', return_value=reports):
            coordinator.reconcile_all()

        self.assertIn('999999', reports[0].error)
        self.assertEqual(reports[1].outcome.last_step, SagaStep.STATUS_SYNCED)

    def test_later_pass_repairs_match_once_store_recovers(self):
        LifecycleCoordinator(
            store=self.ConversationOutageStore(self.broken.pk), sleep=no_sleep
        ).reconcile_all()

        coordinator = LifecycleCoordinator(sleep=no_sleep)
        coordinator.reconcile_all()

        self.assertEqual(coordinator.find_unfinished(), [])
        self.broken.package.refresh_from_db()
        self.assertEqual(self.broken.package.status, 'completed')


class TripCompletionRaceTests(TestCase):
    """A claim on a trip whose last delivery is being confirmed."""

    def setUp(self):
        self.coordinator = LifecycleCoordinator(sleep=no_sleep)
        self.traveler = make_user('traveler')
        self.trip = make_trip(self.traveler, capacity=2)
        self.first_package = make_package(make_user('first'))
        self.second_package = make_package(make_user('second'))
        self.first_match = self.coordinator.propose_match(
            self.first_package.pk, self.trip.pk, self.traveler.uid
        ).match

    def propose_second(self, coordinator=None):
        return (coordinator or self.coordinator).propose_match(
            self.second_package.pk, self.trip.pk, self.traveler.uid
        )

    def test_claim_inserted_after_completion_is_withdrawn(self):
        insert = self.coordinator._claim

        def complete_then_insert(package, trip, traveler_uid):
            self.coordinator.confirm_delivery(self.first_match.pk)
            return insert(package, trip, traveler_uid)

        with mock.patch.object(self.coordinator, '_claim', side_effect=complete_then_insert):
            with self.assertRaises(TripFull):
                self.propose_second()

        self.assertFalse(Match.objects.filter(package=self.second_package).exists())
        self.assertFalse(Conversation.objects.filter(package=self.second_package).exists())
        self.second_package.refresh_from_db()
        self.trip.refresh_from_db()
        self.assertEqual(self.second_package.status, 'pending')
        self.assertEqual(self.trip.status, 'completed')

        # The released package can go on another trip
        other_trip = make_trip(self.traveler)
        outcome = self.coordinator.propose_match(
            self.second_package.pk, other_trip.pk, self.traveler.uid
        )
        self.assertEqual(outcome.match.status, 'accepted')

    def test_completion_between_insert_and_registration_keeps_trip_open(self):
        register = self.coordinator._register

        def complete_then_register(match):
            self.coordinator.confirm_delivery(self.first_match.pk)
            return register(match)

        with mock.patch.object(self.coordinator, '_register', side_effect=complete_then_register):
            outcome = self.propose_second()

        self.assertEqual(outcome.match.status, 'accepted')
        self.trip.refresh_from_db()
        self.assertEqual(self.trip.status, 'in_progress')

    def test_completion_write_loses_to_registered_claim(self):
        test = self

        class ClaimDuringCompletionStore(EntityStore):
            claimed = False

            def patch(self, kind, pk, fields, expected=None):
                if kind == 'trips' and fields.get('status') == 'completed' and not self.claimed:
                    self.claimed = True
                    test.propose_second()
                return super().patch(kind, pk, fields, expected=expected)

        completing = LifecycleCoordinator(store=ClaimDuringCompletionStore(), sleep=no_sleep)
        completing.confirm_delivery(self.first_match.pk)

        second = Match.objects.get(package=self.second_package)
        self.assertEqual(second.status, 'accepted')
        self.trip.refresh_from_db()
        self.assertEqual(self.trip.status, 'in_progress')

        self.coordinator.confirm_delivery(second.pk)
        self.trip.refresh_from_db()
        self.assertEqual(self.trip.status, 'completed')


class EditDuringClaimTests(TestCase):
    """An owner edit that lands before the claim registers."""

    def setUp(self):
        self.coordinator = LifecycleCoordinator(sleep=no_sleep)
        self.sender = make_user('sender')
        self.traveler = make_user('traveler')
        self.package = make_package(self.sender)
        self.trip = make_trip(self.traveler)

    def _register_after(self, edit):
        register = self.coordinator._register

        def edit_then_register(match):
            edit()
            return register(match)

        return mock.patch.object(self.coordinator, '_register', side_effect=edit_then_register)

    def test_package_edited_out_of_route_withdraws_claim(self):
        def reroute():
            default_store.patch(
                'packages',
                self.package.pk,
                {'destination': 'Paris', 'version': self.package.version + 1},
                expected={'status': 'pending', 'version': self.package.version},
            )

        with self._register_after(reroute):
            with self.assertRaises(ValidationError):
                self.coordinator.propose_match(self.package.pk, self.trip.pk, self.traveler.uid)

        self.assertFalse(Match.objects.exists())
        self.package.refresh_from_db()
        self.assertEqual(self.package.destination, 'Paris')
        self.assertEqual(self.package.status, 'pending')

    def test_trip_capacity_cut_withdraws_claim(self):
        trip = make_trip(self.traveler, capacity=2)
        other = make_package(make_user('other'))
        self.coordinator.propose_match(other.pk, trip.pk, self.traveler.uid)

        # The new claim holds slot 1 when the trip shrinks to one slot
        def shrink():
            default_store.patch('trips', trip.pk, {'capacity': 1})

        with self._register_after(shrink):
            with self.assertRaises(TripFull):
                self.coordinator.propose_match(self.package.pk, trip.pk, self.traveler.uid)

        self.assertFalse(Match.objects.filter(package=self.package).exists())
