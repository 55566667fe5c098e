"""
Entity store adapter.

A thin, uniform layer over the marketplace collections. Every method is
exactly one read or one single-document write, which is all the
coordination code is allowed to assume about the backing store: there is
no operation here that updates two documents atomically.

Conditional writes come in two forms:
- ``create_if_absent`` relies on a unique key field and raises
  ``StoreConflict`` when the key is already taken.
- ``patch(..., expected={...})`` only applies when the stored document
  still holds the expected values (compare-and-set).
"""

import logging
from contextlib import contextmanager

from django.db import IntegrityError, InterfaceError, OperationalError, transaction
from django.db.models import ProtectedError
from django.utils import timezone

from .exceptions import EntityNotFound, StoreConflict, TransientStoreError
from .models import (
    Conversation,
    Match,
    Message,
    PackageRequest,
    Review,
    TripOffer,
    User,
)

logger = logging.getLogger(__name__)


COLLECTIONS = {
    'users': User,
    'packages': PackageRequest,
    'trips': TripOffer,
    'matches': Match,
    'conversations': Conversation,
    'messages': Message,
    'reviews': Review,
}


@contextmanager
def store_io(kind, operation):
    """Translate connection-level database failures into TransientStoreError."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.warning(f"Store {operation} on {kind} failed: {e}")
        raise TransientStoreError(f'{operation} on {kind} failed: {e}') from e


class EntityStore:
    """
    get / query / create / patch / create_if_absent / delete over named collections.

    Usage:
        store = EntityStore()
        package = store.get('packages', 42)
        store.patch('packages', 42, {'status': 'in_progress'},
                    expected={'status': 'pending'})
    """

    def model_for(self, kind):
        try:
            return COLLECTIONS[kind]
        except KeyError:
            raise ValueError(f'Unknown collection "{kind}".')

    def get(self, kind, pk, field='pk'):
        """
        Fetch one document by key.

        Args:
            kind: Collection name
            pk: Key value
            field: Key field name (``uid`` for users looked up by uid)

        Raises:
            EntityNotFound: If no document has that key
        """
        model = self.model_for(kind)
        with store_io(kind, 'get'):
            try:
                return model.objects.get(**{field: pk})
            except model.DoesNotExist:
                raise EntityNotFound(kind, pk)

    def query(self, kind, *conditions, order_by=None, **filters):
        """
        Return the documents matching equality/range filters as a list.

        Positional ``conditions`` accept Q objects for OR-style lookups.
        """
        model = self.model_for(kind)
        with store_io(kind, 'query'):
            queryset = model.objects.filter(*conditions, **filters)
            if order_by:
                queryset = queryset.order_by(*order_by)
            return list(queryset)

    def exists(self, kind, **filters):
        model = self.model_for(kind)
        with store_io(kind, 'exists'):
            return model.objects.filter(**filters).exists()

    def count(self, kind, **filters):
        model = self.model_for(kind)
        with store_io(kind, 'count'):
            return model.objects.filter(**filters).count()

    def create(self, kind, /, **fields):
        """
        Validate and insert a new document.

        Raises:
            ValidationError: If the fields fail model validation
        """
        model = self.model_for(kind)
        instance = model(**fields)
        instance.full_clean(validate_unique=False)
        with store_io(kind, 'create'):
            with transaction.atomic():
                instance.save(force_insert=True)
        return instance

    def create_if_absent(self, kind, **fields):
        """
        Insert a document unless one of its unique keys is already taken.

        Raises:
            StoreConflict: If a document with the same unique key exists
            ValidationError: If the fields fail model validation
        """
        model = self.model_for(kind)
        instance = model(**fields)
        instance.full_clean(validate_unique=False)
        with store_io(kind, 'create_if_absent'):
            try:
                with transaction.atomic():
                    instance.save(force_insert=True)
            except IntegrityError as e:
                logger.info(f"Conditional create on {kind} rejected: {e}")
                raise StoreConflict(f'{kind} key already exists.') from e
        return instance

    def patch(self, kind, pk, fields, expected=None):
        """
        Update some fields of one document.

        Args:
            kind: Collection name
            pk: Primary key of the document
            fields: Mapping of field name to new value
            expected: Optional mapping the stored document must still match

        Raises:
            EntityNotFound: If the document does not exist
            StoreConflict: If ``expected`` no longer holds
        """
        model = self.model_for(kind)
        values = dict(fields)
        if any(f.name == 'updated_at' for f in model._meta.concrete_fields):
            values.setdefault('updated_at', timezone.now())

        with store_io(kind, 'patch'):
            with transaction.atomic():
                updated = model.objects.filter(pk=pk, **(expected or {})).update(**values)
            if updated:
                return
            if not model.objects.filter(pk=pk).exists():
                raise EntityNotFound(kind, pk)
        raise StoreConflict(
            f'{kind} {pk} no longer matches {sorted((expected or {}).keys())}.'
        )

    def delete(self, kind, pk, expected=None):
        """
        Delete one document, optionally only while it matches ``expected``.

        Raises:
            EntityNotFound: If the document does not exist
            StoreConflict: If ``expected`` no longer holds or other
                documents still reference it
        """
        model = self.model_for(kind)
        with store_io(kind, 'delete'):
            try:
                with transaction.atomic():
                    deleted, _ = model.objects.filter(pk=pk, **(expected or {})).delete()
            except ProtectedError as e:
                raise StoreConflict(f'{kind} {pk} is still referenced.') from e
            if deleted:
                return
            if not model.objects.filter(pk=pk).exists():
                raise EntityNotFound(kind, pk)
        raise StoreConflict(
            f'{kind} {pk} no longer matches {sorted((expected or {}).keys())}.'
        )


default_store = EntityStore()
