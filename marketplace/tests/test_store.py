"""
Tests for the entity store adapter.
"""

from unittest import mock

from django.core.exceptions import ValidationError
from django.db import OperationalError
from django.test import TestCase

from marketplace.exceptions import EntityNotFound, StoreConflict, TransientStoreError
from marketplace.models import Match, PackageRequest
from marketplace.store import EntityStore
from marketplace.tests.factories import make_package, make_trip, make_user


class EntityStoreTests(TestCase):

    def setUp(self):
        self.store = EntityStore()
        self.sender = make_user('sender')
        self.traveler = make_user('traveler')
        self.package = make_package(self.sender)
        self.trip = make_trip(self.traveler)

    def match_fields(self, **overrides):
        fields = {
            'package_id': self.package.pk,
            'trip_id': self.trip.pk,
            'traveler_id': self.traveler.uid,
            'sender_id': self.sender.uid,
            'claim_key': Match.claim_key_for(self.package.pk),
            'slot_key': Match.slot_key_for(self.trip.pk, 0),
        }
        fields.update(overrides)
        return fields

    def test_get_by_pk_and_uid(self):
        self.assertEqual(self.store.get('packages', self.package.pk), self.package)
        self.assertEqual(self.store.get('users', self.sender.uid, field='uid'), self.sender)

    def test_get_missing_raises_not_found(self):
        with self.assertRaises(EntityNotFound) as ctx:
            self.store.get('packages', 999999)
        self.assertEqual(ctx.exception.code, 'not_found')

    def test_unknown_collection(self):
        with self.assertRaises(ValueError):
            self.store.get('parcels', 1)

    def test_query_returns_list(self):
        result = self.store.query('packages', owner_id=self.sender.uid)
        self.assertEqual(result, [self.package])

    def test_create_validates(self):
        with self.assertRaises(ValidationError):
            self.store.create(
                'packages',
                owner_id=self.sender.uid,
                origin='Milan',
                destination='milan',
                deadline=self.package.deadline,
                size='small',
                price='10.00',
            )
        self.assertEqual(PackageRequest.objects.count(), 1)

    def test_create_if_absent_rejects_taken_key(self):
        first = self.store.create_if_absent('matches', **self.match_fields())
        self.assertIsNotNone(first.pk)

        with self.assertRaises(StoreConflict):
            self.store.create_if_absent('matches', **self.match_fields(slot_key=None))
        self.assertEqual(Match.objects.count(), 1)

    def test_slot_key_conflict_is_a_store_conflict(self):
        self.store.create_if_absent('matches', **self.match_fields())
        other = make_package(make_user('other'))
        with self.assertRaises(StoreConflict):
            self.store.create_if_absent(
                'matches',
                **self.match_fields(
                    package_id=other.pk,
                    sender_id=other.owner_id,
                    claim_key=Match.claim_key_for(other.pk),
                )
            )

    def test_released_slot_keys_do_not_collide(self):
        self.store.create_if_absent('matches', **self.match_fields(slot_key=None))
        other = make_package(make_user('other'))
        self.store.create_if_absent(
            'matches',
            **self.match_fields(
                package_id=other.pk,
                sender_id=other.owner_id,
                claim_key=Match.claim_key_for(other.pk),
                slot_key=None,
            )
        )
        self.assertEqual(Match.objects.filter(slot_key__isnull=True).count(), 2)

    def test_patch_with_expected_value(self):
        self.store.patch('packages', self.package.pk, {'status': 'in_progress'},
                         expected={'status': 'pending'})
        self.package.refresh_from_db()
        self.assertEqual(self.package.status, 'in_progress')

    def test_patch_precondition_failure(self):
        with self.assertRaises(StoreConflict):
            self.store.patch('packages', self.package.pk, {'status': 'completed'},
                             expected={'status': 'in_progress'})
        self.package.refresh_from_db()
        self.assertEqual(self.package.status, 'pending')

    def test_patch_missing_document(self):
        with self.assertRaises(EntityNotFound):
            self.store.patch('packages', 999999, {'status': 'in_progress'})

    def test_delete_referenced_document_conflicts(self):
        self.store.create_if_absent('matches', **self.match_fields())
        with self.assertRaises(StoreConflict):
            self.store.delete('packages', self.package.pk)
        self.assertTrue(PackageRequest.objects.filter(pk=self.package.pk).exists())

    def test_delete_with_expected_value(self):
        self.store.delete('packages', self.package.pk, expected={'status': 'pending'})
        self.assertFalse(PackageRequest.objects.filter(pk=self.package.pk).exists())

    def test_connection_errors_become_transient(self):
        with mock.patch.object(
            PackageRequest.objects, 'get', side_effect=OperationalError('server has gone away')
        ):
            with self.assertRaises(TransientStoreError):
                self.store.get('packages', self.package.pk)
