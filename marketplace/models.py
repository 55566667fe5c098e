"""
Models for the parcel marketplace.

Each model is one collection in the entity store. Records reference users by
their opaque ``uid`` rather than the numeric primary key, so ``owner_id``,
``traveler_id`` and friends hold uid strings.
"""

import uuid

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from . import state_machines as sm
from .validators import normalize_location, location_key, validate_location


def generate_uid():
    """Generate an opaque user identifier."""
    return uuid.uuid4().hex


class User(AbstractUser):
    """
    Marketplace user. Acts as sender, traveler, or both.

    Additional fields:
    - uid: Opaque identifier referenced by every other record
    - display_name: Public name shown next to posts and reviews
    - photo_url: Optional avatar URL (uploads are handled elsewhere)
    - rating: Running average of received review ratings (0 when unrated)
    - review_count: Number of reviews folded into ``rating``
    """

    uid = models.CharField(
        _('uid'),
        max_length=64,
        unique=True,
        default=generate_uid,
        editable=False,
        help_text=_('Opaque identifier used to reference this user.')
    )

    display_name = models.CharField(
        _('display name'),
        max_length=150,
        blank=True,
        default='',
        help_text=_('Public name shown to other users.')
    )

    photo_url = models.URLField(
        _('photo URL'),
        max_length=500,
        blank=True,
        default='',
        help_text=_('Optional avatar URL.')
    )

    rating = models.FloatField(
        _('rating'),
        default=0.0,
        validators=[
            MinValueValidator(0.0, message=_('Rating cannot be negative.')),
            MaxValueValidator(5.0, message=_('Rating cannot exceed 5.'))
        ],
        help_text=_('Average rating received, stored unrounded.')
    )

    review_count = models.PositiveIntegerField(
        _('review count'),
        default=0,
        help_text=_('Number of reviews included in the average.')
    )

    created_at = models.DateTimeField(
        _('created at'),
        auto_now_add=True
    )

    updated_at = models.DateTimeField(
        _('updated at'),
        auto_now=True
    )

    class Meta:
        verbose_name = _('user')
        verbose_name_plural = _('users')
        ordering = ['-created_at']

    def __str__(self):
        return self.display_name or self.username

    @property
    def display_rating(self):
        """Rating rounded to one decimal for display."""
        return round(self.rating, 1)


class PackageRequest(models.Model):
    """
    A sender's request to ship an item between two locations by a deadline.

    Editable and deletable only by its owner while still pending.
    """

    SIZE_CHOICES = [
        ('small', 'Small'),
        ('medium', 'Medium'),
        ('large', 'Large'),
    ]

    STATUS_CHOICES = [
        (sm.PACKAGE_PENDING, 'Pending'),
        (sm.PACKAGE_IN_PROGRESS, 'In progress'),
        (sm.PACKAGE_COMPLETED, 'Completed'),
    ]

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='packages',
        help_text=_('Sender who owns this request')
    )

    origin = models.CharField(
        _('from'),
        max_length=200,
        validators=[validate_location]
    )

    destination = models.CharField(
        _('to'),
        max_length=200,
        validators=[validate_location]
    )

    deadline = models.DateField(
        _('deadline'),
        help_text=_('Latest acceptable arrival date')
    )

    description = models.TextField(
        _('description'),
        blank=True,
        default=''
    )

    size = models.CharField(
        _('size'),
        max_length=10,
        choices=SIZE_CHOICES
    )

    price = models.DecimalField(
        _('price'),
        max_digits=10,
        decimal_places=2,
        help_text=_('Offered price in EUR')
    )

    image_url = models.URLField(
        _('image URL'),
        max_length=500,
        blank=True,
        default=''
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=sm.PACKAGE_PENDING
    )

    version = models.PositiveIntegerField(
        _('version'),
        default=0,
        editable=False,
        help_text=_('Bumped by every claim, edit and status change')
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('package request')
        verbose_name_plural = _('package requests')
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['status'], name='package_status_idx'),
            models.Index(fields=['origin', 'destination'], name='package_route_idx'),
        ]

    def __str__(self):
        return f"Package {self.pk}: {self.origin} → {self.destination}"

    @property
    def owner_uid(self):
        return self.owner_id

    @property
    def route_key(self):
        return (location_key(self.origin), location_key(self.destination))

    def is_open(self):
        """A package can be matched only while pending."""
        return self.status == sm.PACKAGE_PENDING

    def clean(self):
        """
        Validate model fields and status transitions.

        Ensures:
        - Location labels are normalized and differ from each other
        - Price is greater than 0
        - Status changes follow the package state machine

        Raises:
            ValidationError: If validation fails
        """
        super().clean()

        self.origin = normalize_location(self.origin)
        self.destination = normalize_location(self.destination)

        if self.origin and location_key(self.origin) == location_key(self.destination):
            raise ValidationError({
                'destination': _('Destination must differ from origin.')
            })

        if self.price is not None and self.price <= 0:
            raise ValidationError({
                'price': _('Price must be greater than 0.')
            })

        if self.pk is not None:
            try:
                old_status = PackageRequest.objects.values_list(
                    'status', flat=True
                ).get(pk=self.pk)
            except PackageRequest.DoesNotExist:
                old_status = None
            if old_status is not None:
                is_valid, error = sm.can_transition('packages', old_status, self.status)
                if not is_valid:
                    raise ValidationError({'status': error})

    def save(self, *args, **kwargs):
        """Override save to ensure validation."""
        self.full_clean()
        super().save(*args, **kwargs)


class TripOffer(models.Model):
    """
    A traveler's declared capacity to carry packages on a route and date.

    May hold up to ``capacity`` non-completed Matches at once.
    """

    STATUS_CHOICES = [
        (sm.TRIP_ACTIVE, 'Active'),
        (sm.TRIP_IN_PROGRESS, 'In progress'),
        (sm.TRIP_COMPLETED, 'Completed'),
    ]

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='trips',
        help_text=_('Traveler who owns this trip')
    )

    origin = models.CharField(
        _('from'),
        max_length=200,
        validators=[validate_location]
    )

    destination = models.CharField(
        _('to'),
        max_length=200,
        validators=[validate_location]
    )

    date = models.DateField(
        _('travel date'),
        help_text=_('Arrival date at the destination')
    )

    capacity = models.PositiveIntegerField(
        _('capacity'),
        default=1,
        validators=[MinValueValidator(1, message=_('Capacity must be at least 1.'))],
        help_text=_('How many packages the traveler can carry')
    )

    notes = models.TextField(
        _('notes'),
        blank=True,
        default=''
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=sm.TRIP_ACTIVE
    )

    version = models.PositiveIntegerField(
        _('version'),
        default=0,
        editable=False,
        help_text=_('Bumped by every claim, edit and status change')
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('trip offer')
        verbose_name_plural = _('trip offers')
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['status'], name='trip_status_idx'),
            models.Index(fields=['origin', 'destination'], name='trip_route_idx'),
        ]

    def __str__(self):
        return f"Trip {self.pk}: {self.origin} → {self.destination} on {self.date}"

    @property
    def owner_uid(self):
        return self.owner_id

    @property
    def route_key(self):
        return (location_key(self.origin), location_key(self.destination))

    def is_open(self):
        """A trip is listed for matching only while active."""
        return self.status == sm.TRIP_ACTIVE

    def clean(self):
        """
        Validate model fields and status transitions.

        Raises:
            ValidationError: If validation fails
        """
        super().clean()

        self.origin = normalize_location(self.origin)
        self.destination = normalize_location(self.destination)

        if self.origin and location_key(self.origin) == location_key(self.destination):
            raise ValidationError({
                'destination': _('Destination must differ from origin.')
            })

        if self.pk is not None:
            try:
                old_status = TripOffer.objects.values_list(
                    'status', flat=True
                ).get(pk=self.pk)
            except TripOffer.DoesNotExist:
                old_status = None
            if old_status is not None:
                is_valid, error = sm.can_transition('trips', old_status, self.status)
                if not is_valid:
                    raise ValidationError({'status': error})

    def save(self, *args, **kwargs):
        """Override save to ensure validation."""
        self.full_clean()
        super().save(*args, **kwargs)


class Match(models.Model):
    """
    The committed pairing of one PackageRequest with one TripOffer.

    ``claim_key`` is derived from the package and is unique, so inserting a
    Match is the conditional write that decides which traveler wins a
    package. ``slot_key`` occupies one of the trip's capacity slots and is
    cleared when the match completes.
    """

    STATUS_CHOICES = [
        (sm.MATCH_PENDING, 'Pending'),
        (sm.MATCH_ACCEPTED, 'Accepted'),
        (sm.MATCH_COMPLETED, 'Completed'),
    ]

    package = models.ForeignKey(
        PackageRequest,
        on_delete=models.PROTECT,
        related_name='matches'
    )

    trip = models.ForeignKey(
        TripOffer,
        on_delete=models.PROTECT,
        related_name='matches'
    )

    traveler = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='matches_as_traveler'
    )

    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='matches_as_sender'
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=sm.MATCH_PENDING
    )

    claim_key = models.CharField(
        _('claim key'),
        max_length=64,
        unique=True,
        editable=False
    )

    slot_key = models.CharField(
        _('slot key'),
        max_length=96,
        unique=True,
        null=True,
        blank=True,
        editable=False
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    accepted_at = models.DateTimeField(_('accepted at'), null=True, blank=True)
    completed_at = models.DateTimeField(_('completed at'), null=True, blank=True)

    class Meta:
        verbose_name = _('match')
        verbose_name_plural = _('matches')
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['status'], name='match_status_idx'),
        ]

    def __str__(self):
        return f"Match {self.pk}: package {self.package_id} / trip {self.trip_id} ({self.status})"

    @staticmethod
    def claim_key_for(package_id):
        return f'package:{package_id}'

    @staticmethod
    def slot_key_for(trip_id, slot):
        return f'trip:{trip_id}:slot:{slot}'

    @property
    def slot_index(self):
        """Capacity slot held on the trip, or None once released."""
        if not self.slot_key:
            return None
        return int(self.slot_key.rsplit(':', 1)[1])

    @property
    def traveler_uid(self):
        return self.traveler_id

    @property
    def sender_uid(self):
        return self.sender_id

    def participants(self):
        return {self.traveler_id, self.sender_id}

    def is_terminal(self):
        return self.status == sm.MATCH_COMPLETED

    def clean(self):
        """
        Validate the pairing.

        Ensures:
        - Traveler and sender are different users
        - Sender owns the package and traveler owns the trip

        Raises:
            ValidationError: If validation fails
        """
        super().clean()

        if self.traveler_id and self.sender_id and self.traveler_id == self.sender_id:
            raise ValidationError({
                'traveler': _('Traveler and sender cannot be the same user.')
            })

        if self.package_id and self.sender_id and self.package.owner_id != self.sender_id:
            raise ValidationError({
                'sender': _('Match sender must own the package.')
            })

        if self.trip_id and self.traveler_id and self.trip.owner_id != self.traveler_id:
            raise ValidationError({
                'traveler': _('Match traveler must own the trip.')
            })


class Conversation(models.Model):
    """
    Messaging channel between the two participants of a Match.

    The participant pair is stored sorted so (a, b) and (b, a) are the same
    conversation.
    """

    participant_low = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='+'
    )

    participant_high = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='+'
    )

    match = models.OneToOneField(
        Match,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='conversation'
    )

    package = models.ForeignKey(
        PackageRequest,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='conversations'
    )

    trip = models.ForeignKey(
        TripOffer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='conversations'
    )

    last_message = models.TextField(_('last message'), blank=True, default='')
    last_message_at = models.DateTimeField(_('last message at'), null=True, blank=True)
    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    class Meta:
        verbose_name = _('conversation')
        verbose_name_plural = _('conversations')
        ordering = ['-last_message_at', '-created_at']

    def __str__(self):
        return f"Conversation {self.pk} ({self.participant_low_id}, {self.participant_high_id})"

    @staticmethod
    def ordered_pair(first_uid, second_uid):
        """Return the participant pair in storage order."""
        return tuple(sorted((first_uid, second_uid)))

    @property
    def participant_uids(self):
        return (self.participant_low_id, self.participant_high_id)

    def has_participant(self, uid):
        return uid in self.participant_uids

    def other_participant(self, uid):
        low, high = self.participant_uids
        return high if uid == low else low

    def clean(self):
        super().clean()

        if self.participant_low_id == self.participant_high_id:
            raise ValidationError(
                _('A conversation needs two different participants.')
            )

        if (self.participant_low_id, self.participant_high_id) != self.ordered_pair(
            self.participant_low_id, self.participant_high_id
        ):
            raise ValidationError(
                _('Participants must be stored in sorted order.')
            )


class Message(models.Model):
    """A single chat message inside a Conversation."""

    KIND_TEXT = 'text'
    KIND_LOCATION = 'location'
    KIND_QUICK_ACTION = 'quickAction'

    KIND_CHOICES = [
        (KIND_TEXT, 'Text'),
        (KIND_LOCATION, 'Location'),
        (KIND_QUICK_ACTION, 'Quick action'),
    ]

    ACTION_MEETING_POINT = 'meeting_point'
    ACTION_CONFIRM_PRICE = 'confirm_price'
    ACTION_DELIVERY_CONFIRMED = 'delivery_confirmed'

    ACTION_CHOICES = [
        (ACTION_MEETING_POINT, 'Meeting point'),
        (ACTION_CONFIRM_PRICE, 'Confirm price'),
        (ACTION_DELIVERY_CONFIRMED, 'Delivery confirmed'),
    ]

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name='messages'
    )

    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='messages_sent'
    )

    content = models.TextField(_('content'))

    kind = models.CharField(
        _('kind'),
        max_length=20,
        choices=KIND_CHOICES,
        default=KIND_TEXT
    )

    action = models.CharField(
        _('quick action'),
        max_length=30,
        choices=ACTION_CHOICES,
        blank=True,
        default=''
    )

    timestamp = models.DateTimeField(_('timestamp'), default=timezone.now)
    read = models.BooleanField(_('read'), default=False)

    class Meta:
        verbose_name = _('message')
        verbose_name_plural = _('messages')
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['conversation', 'timestamp'], name='message_timeline_idx'),
        ]

    def __str__(self):
        return f"Message {self.pk} in conversation {self.conversation_id}"

    def clean(self):
        """
        Validate message content and quick-action tagging.

        Raises:
            ValidationError: If validation fails
        """
        super().clean()

        if not self.content or not self.content.strip():
            raise ValidationError({
                'content': _('Message cannot be empty.')
            })

        if self.kind == self.KIND_QUICK_ACTION and not self.action:
            raise ValidationError({
                'action': _('Quick action messages must name an action.')
            })

        if self.kind != self.KIND_QUICK_ACTION and self.action:
            raise ValidationError({
                'action': _('Only quick action messages carry an action.')
            })

        if self.conversation_id and self.sender_id:
            if not self.conversation.has_participant(self.sender_id):
                raise ValidationError({
                    'sender': _('Sender is not a participant of this conversation.')
                })


class Review(models.Model):
    """
    A rating one user gives another for a package or trip.

    ``dedupe_key`` is unique over (author, subject, package, trip), which
    allows at most one review per tuple. ``applied`` records whether the
    rating has been folded into the subject's running average.
    """

    author = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='reviews_given'
    )

    subject = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        to_field='uid',
        on_delete=models.PROTECT,
        related_name='reviews_received'
    )

    package = models.ForeignKey(
        PackageRequest,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reviews'
    )

    trip = models.ForeignKey(
        TripOffer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reviews'
    )

    rating = models.PositiveSmallIntegerField(
        _('rating'),
        validators=[
            MinValueValidator(1, message=_('Rating must be at least 1.')),
            MaxValueValidator(5, message=_('Rating must be at most 5.'))
        ],
        help_text=_('Rating from 1 to 5 stars')
    )

    comment = models.TextField(_('comment'), blank=True, default='')

    dedupe_key = models.CharField(
        _('dedupe key'),
        max_length=255,
        unique=True,
        editable=False
    )

    applied = models.BooleanField(
        _('applied'),
        default=False,
        help_text=_('Whether this rating is included in the subject aggregate')
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    class Meta:
        verbose_name = _('review')
        verbose_name_plural = _('reviews')
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['subject', 'applied'], name='review_subject_applied_idx'),
        ]

    def __str__(self):
        return f"Review by {self.author_id} for {self.subject_id} - {self.rating}★"

    @staticmethod
    def dedupe_key_for(author_uid, subject_uid, package_id=None, trip_id=None):
        return f'{author_uid}|{subject_uid}|{package_id or ""}|{trip_id or ""}'

    def clean(self):
        """
        Validate model fields.

        Ensures:
        - Author and subject are different users
        - The review is tied to a package or a trip

        Raises:
            ValidationError: If validation fails
        """
        super().clean()

        if self.author_id and self.subject_id and self.author_id == self.subject_id:
            raise ValidationError({
                'subject': _('You cannot review yourself.')
            })

        if not self.package_id and not self.trip_id:
            raise ValidationError(
                _('A review must reference a package or a trip.')
            )
