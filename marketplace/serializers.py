"""
Serializers for the parcel marketplace API.

Model serializers cover plain reads and the package/trip posting
endpoints. Coordinator and aggregator operations take small plain
serializers that only validate the request shape; the operations
themselves enforce every business rule.
"""

from rest_framework import serializers

from .models import (
    Conversation,
    Match,
    Message,
    PackageRequest,
    Review,
    TripOffer,
    User,
)
from .validators import location_key, normalize_location


class UserSummarySerializer(serializers.ModelSerializer):
    """Public view of a user, as shown next to posts and reviews."""

    rating = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ['uid', 'display_name', 'photo_url', 'rating', 'review_count']
        read_only_fields = fields

    def get_rating(self, obj):
        return obj.display_rating


class _RouteSerializerMixin:
    """Shared validation of the origin/destination pair."""

    def validate_origin(self, value):
        value = normalize_location(value)
        if not value:
            raise serializers.ValidationError("Origin cannot be empty.")
        return value

    def validate_destination(self, value):
        value = normalize_location(value)
        if not value:
            raise serializers.ValidationError("Destination cannot be empty.")
        return value

    def validate(self, attrs):
        origin = attrs.get('origin', getattr(self.instance, 'origin', None))
        destination = attrs.get('destination', getattr(self.instance, 'destination', None))
        if origin and destination and location_key(origin) == location_key(destination):
            raise serializers.ValidationError({
                'destination': 'Destination must differ from origin.'
            })
        return attrs


class PackageRequestSerializer(_RouteSerializerMixin, serializers.ModelSerializer):
    """
    Serializer for posting, listing and editing package requests.

    Read-only fields (auto-populated):
    - owner: uid of the authenticated sender
    - status: Managed by the lifecycle coordinator
    """

    owner = serializers.CharField(source='owner_id', read_only=True)

    class Meta:
        model = PackageRequest
        fields = [
            'id',
            'owner',
            'origin',
            'destination',
            'deadline',
            'description',
            'size',
            'price',
            'image_url',
            'status',
            'created_at',
            'updated_at'
        ]
        read_only_fields = ['id', 'owner', 'status', 'created_at', 'updated_at']

    def validate_price(self, value):
        """
        Validate the offered price is positive.

        Raises:
            ValidationError: If price is zero or negative
        """
        if value <= 0:
            raise serializers.ValidationError("Price must be greater than 0.")
        return value


class TripOfferSerializer(_RouteSerializerMixin, serializers.ModelSerializer):
    """Serializer for posting and listing trip offers."""

    owner = serializers.CharField(source='owner_id', read_only=True)

    class Meta:
        model = TripOffer
        fields = [
            'id',
            'owner',
            'origin',
            'destination',
            'date',
            'capacity',
            'notes',
            'status',
            'created_at',
            'updated_at'
        ]
        read_only_fields = ['id', 'owner', 'status', 'created_at', 'updated_at']

    def validate_capacity(self, value):
        if value < 1:
            raise serializers.ValidationError("Capacity must be at least 1.")
        return value


class MatchSerializer(serializers.ModelSerializer):
    """Read-only representation of a match and its conversation."""

    traveler = serializers.CharField(source='traveler_id', read_only=True)
    sender = serializers.CharField(source='sender_id', read_only=True)
    conversation = serializers.SerializerMethodField()

    class Meta:
        model = Match
        fields = [
            'id',
            'package',
            'trip',
            'traveler',
            'sender',
            'status',
            'conversation',
            'created_at',
            'accepted_at',
            'completed_at'
        ]
        read_only_fields = fields

    def get_conversation(self, obj):
        conversation = Conversation.objects.filter(match_id=obj.pk).values_list('pk', flat=True).first()
        return conversation


class MatchProposalSerializer(serializers.Serializer):
    """Request body of ``POST /api/matches/``."""

    package_id = serializers.IntegerField(min_value=1)
    trip_id = serializers.IntegerField(min_value=1)


class ReviewCreateSerializer(serializers.Serializer):
    """
    Request body of ``POST /api/reviews/``.

    The author is always the authenticated user.
    """

    subject_uid = serializers.CharField(max_length=64)
    rating = serializers.IntegerField(min_value=1, max_value=5)
    package_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    trip_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    comment = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, attrs):
        if not attrs.get('package_id') and not attrs.get('trip_id'):
            raise serializers.ValidationError(
                "A review must reference a package or a trip."
            )
        return attrs


class ReviewSerializer(serializers.ModelSerializer):
    """A received review as listed on a user's profile."""

    author = UserSummarySerializer(read_only=True)
    subject = serializers.CharField(source='subject_id', read_only=True)

    class Meta:
        model = Review
        fields = [
            'id',
            'author',
            'subject',
            'package',
            'trip',
            'rating',
            'comment',
            'created_at'
        ]
        read_only_fields = fields


class RatingSummarySerializer(serializers.Serializer):
    new_average = serializers.FloatField()
    new_count = serializers.IntegerField()


class ConversationSerializer(serializers.ModelSerializer):
    """Conversation as listed for one of its participants."""

    participants = serializers.SerializerMethodField()
    other_participant = serializers.SerializerMethodField()
    unread_count = serializers.SerializerMethodField()

    class Meta:
        model = Conversation
        fields = [
            'id',
            'participants',
            'other_participant',
            'match',
            'package',
            'trip',
            'last_message',
            'last_message_at',
            'unread_count',
            'created_at'
        ]
        read_only_fields = fields

    def _viewer_uid(self):
        request = self.context.get('request')
        return getattr(getattr(request, 'user', None), 'uid', None)

    def get_participants(self, obj):
        return list(obj.participant_uids)

    def get_other_participant(self, obj):
        uid = self._viewer_uid()
        return obj.other_participant(uid) if uid else None

    def get_unread_count(self, obj):
        uid = self._viewer_uid()
        if not uid:
            return 0
        return obj.messages.filter(read=False).exclude(sender_id=uid).count()


class MessageSerializer(serializers.ModelSerializer):
    """Serializer for reading and posting chat messages."""

    sender = serializers.CharField(source='sender_id', read_only=True)
    kind = serializers.ChoiceField(choices=Message.KIND_CHOICES, default=Message.KIND_TEXT)
    action = serializers.ChoiceField(
        choices=Message.ACTION_CHOICES, required=False, allow_blank=True, default=''
    )

    class Meta:
        model = Message
        fields = [
            'id',
            'conversation',
            'sender',
            'content',
            'kind',
            'action',
            'timestamp',
            'read'
        ]
        read_only_fields = ['id', 'conversation', 'sender', 'timestamp', 'read']

    def validate_content(self, value):
        if not value or not value.strip():
            raise serializers.ValidationError("Message cannot be empty.")
        return value

    def validate(self, attrs):
        kind = attrs.get('kind', Message.KIND_TEXT)
        action = attrs.get('action', '')
        if kind == Message.KIND_QUICK_ACTION and not action:
            raise serializers.ValidationError({
                'action': 'Quick action messages must name an action.'
            })
        if kind != Message.KIND_QUICK_ACTION and action:
            raise serializers.ValidationError({
                'action': 'Only quick action messages carry an action.'
            })
        return attrs
