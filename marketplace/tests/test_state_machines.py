"""
Tests for the package, trip and match status state machines.
"""

from types import SimpleNamespace

from django.test import SimpleTestCase

from marketplace import state_machines as sm
from marketplace.exceptions import InvalidTransition


def matches(*statuses):
    return [SimpleNamespace(status=status) for status in statuses]


class TransitionTableTests(SimpleTestCase):

    def test_package_forward_transitions_allowed(self):
        self.assertEqual(sm.can_transition('packages', 'pending', 'in_progress'), (True, None))
        self.assertEqual(sm.can_transition('packages', 'in_progress', 'completed'), (True, None))

    def test_same_status_is_a_noop(self):
        for kind, table in sm.TRANSITIONS.items():
            for status in table:
                self.assertTrue(sm.can_transition(kind, status, status)[0])

    def test_cannot_skip_in_progress(self):
        is_valid, error = sm.can_transition('packages', 'pending', 'completed')
        self.assertFalse(is_valid)
        self.assertIn('pending to completed', error)

        self.assertFalse(sm.can_transition('trips', 'active', 'completed')[0])
        self.assertFalse(sm.can_transition('matches', 'pending', 'completed')[0])

    def test_no_reverse_transitions(self):
        self.assertFalse(sm.can_transition('packages', 'in_progress', 'pending')[0])
        self.assertFalse(sm.can_transition('trips', 'in_progress', 'active')[0])
        self.assertFalse(sm.can_transition('matches', 'accepted', 'pending')[0])

    def test_completed_is_terminal(self):
        is_valid, error = sm.can_transition('packages', 'completed', 'in_progress')
        self.assertFalse(is_valid)
        self.assertEqual(error, 'Cannot modify a completed record.')

    def test_unknown_status_rejected(self):
        self.assertFalse(sm.can_transition('trips', 'cancelled', 'active')[0])

    def test_check_transition_raises(self):
        with self.assertRaises(InvalidTransition):
            sm.check_transition('matches', 'completed', 'accepted')
        sm.check_transition('matches', 'pending', 'accepted')


class NextStatusTests(SimpleTestCase):

    def test_single_step(self):
        self.assertEqual(sm.next_status_towards('packages', 'pending', 'in_progress'), 'in_progress')

    def test_multi_step_returns_first_hop(self):
        self.assertEqual(sm.next_status_towards('packages', 'pending', 'completed'), 'in_progress')
        self.assertEqual(sm.next_status_towards('trips', 'active', 'completed'), 'in_progress')

    def test_already_there(self):
        self.assertIsNone(sm.next_status_towards('trips', 'completed', 'completed'))

    def test_unreachable_target(self):
        self.assertIsNone(sm.next_status_towards('packages', 'completed', 'pending'))


class DerivePackageStatusTests(SimpleTestCase):

    def test_no_matches_keeps_current(self):
        self.assertEqual(sm.derive_package_status('pending', []), 'pending')

    def test_pending_match_does_not_move_package(self):
        self.assertEqual(sm.derive_package_status('pending', matches('pending')), 'pending')

    def test_one_accepted_match_means_in_progress(self):
        self.assertEqual(sm.derive_package_status('pending', matches('accepted')), 'in_progress')

    def test_completed_match_means_completed(self):
        self.assertEqual(sm.derive_package_status('in_progress', matches('completed')), 'completed')
        self.assertEqual(sm.derive_package_status('pending', matches('completed')), 'completed')

    def test_never_moves_backwards(self):
        self.assertEqual(sm.derive_package_status('completed', []), 'completed')
        self.assertEqual(sm.derive_package_status('in_progress', matches('pending')), 'in_progress')


class DeriveTripStatusTests(SimpleTestCase):

    def test_no_matches_keeps_active(self):
        self.assertEqual(sm.derive_trip_status('active', []), 'active')

    def test_any_accepted_match_means_in_progress(self):
        self.assertEqual(sm.derive_trip_status('active', matches('accepted', 'pending')), 'in_progress')

    def test_stays_in_progress_until_every_match_completed(self):
        self.assertEqual(
            sm.derive_trip_status('in_progress', matches('completed', 'accepted')),
            'in_progress'
        )
        self.assertEqual(
            sm.derive_trip_status('in_progress', matches('completed', 'completed')),
            'completed'
        )

    def test_completed_trip_stays_completed(self):
        self.assertEqual(sm.derive_trip_status('completed', matches('accepted')), 'completed')
