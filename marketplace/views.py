"""
API views for the parcel marketplace.

Views validate request shape with serializers and hand off to the
compatibility filter, lifecycle coordinator, rating aggregator and
messaging modules. Marketplace errors are turned into responses by
``marketplace_exception_handler``.
"""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import generics, status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView, exception_handler

from . import state_machines as sm
from .compatibility import compatible_for_package, compatible_for_trip
from .coordinator import coordinator
from .exceptions import (
    AlreadyMatched,
    DuplicateReview,
    EntityNotFound,
    InvalidTransition,
    MarketplaceError,
    PartialMatch,
    SelfMatch,
    StoreConflict,
    TransientStoreError,
    TripBooked,
    TripFull,
)
from .messaging import conversations_for, get_conversation_for, mark_read, messages_in, post_message
from .models import Match, PackageRequest, Review, TripOffer
from .permissions import IsMatchParticipant, IsOwnerOrReadOnly
from .ratings import aggregator
from .retry import call_with_retry
from .serializers import (
    ConversationSerializer,
    MatchProposalSerializer,
    MatchSerializer,
    MessageSerializer,
    PackageRequestSerializer,
    RatingSummarySerializer,
    ReviewCreateSerializer,
    ReviewSerializer,
    TripOfferSerializer,
)
from .store import default_store

logger = logging.getLogger(__name__)


ERROR_STATUS = [
    (PartialMatch, status.HTTP_202_ACCEPTED),
    (SelfMatch, status.HTTP_400_BAD_REQUEST),
    (AlreadyMatched, status.HTTP_409_CONFLICT),
    (TripFull, status.HTTP_409_CONFLICT),
    (TripBooked, status.HTTP_409_CONFLICT),
    (DuplicateReview, status.HTTP_409_CONFLICT),
    (StoreConflict, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (EntityNotFound, status.HTTP_404_NOT_FOUND),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def marketplace_exception_handler(exc, context):
    """
    DRF exception handler aware of marketplace and model validation errors.

    Response bodies carry ``code`` and ``detail``; a partial match also
    returns ``match_id`` and ``last_step`` so the client can retry.
    """
    view = context.get('view')
    view_name = type(view).__name__ if view else 'unknown view'

    if isinstance(exc, DjangoValidationError):
        if hasattr(exc, 'error_dict'):
            body = exc.message_dict
        else:
            body = {'non_field_errors': exc.messages}
        logger.info(f"{view_name}: validation failed: {body}")
        return Response(body, status=status.HTTP_400_BAD_REQUEST)

    if isinstance(exc, MarketplaceError):
        status_code = next(
            (code for error_class, code in ERROR_STATUS if isinstance(exc, error_class)),
            status.HTTP_400_BAD_REQUEST
        )
        body = {'code': exc.code, 'detail': exc.message}
        if isinstance(exc, PartialMatch):
            body['match_id'] = exc.match_id
            body['last_step'] = exc.last_step

        if status_code >= 500:
            logger.error(f"{view_name}: {exc.code}: {exc.message}")
        else:
            logger.warning(f"{view_name}: {exc.code}: {exc.message}")
        return Response(body, status=status_code)

    return exception_handler(exc, context)


# ============================================================================
# Package requests and trip offers
# ============================================================================

class PackageListCreateView(generics.ListCreateAPIView):
    """
    List package requests or post a new one.

    GET /api/packages/?status=pending&mine=true
    POST /api/packages/
    Request body: {
        "origin": "Milan",
        "destination": "Tunis",
        "deadline": "2025-07-20",
        "size": "small",
        "price": "25.00",
        "description": "Two books"
    }
    """
    serializer_class = PackageRequestSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        queryset = PackageRequest.objects.all()
        status_filter = self.request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        if self.request.query_params.get('mine') in ('1', 'true'):
            queryset = queryset.filter(owner_id=self.request.user.uid)
        return queryset

    def perform_create(self, serializer):
        package = serializer.save(owner=self.request.user)
        logger.info(
            f"Package {package.pk} posted by {self.request.user.uid}: "
            f"{package.origin} -> {package.destination} by {package.deadline}"
        )


class VersionedDetailMixin:
    """
    Owner edits and deletes of a package or trip, serialized against claims.

    The record's ``version`` is read with the object, the record is checked
    for matches, and the write is a compare-and-set on the open status and
    that version. A claim registers by bumping the same version, so an edit
    either lands before the claim registers (and the claim re-checks the
    edited record) or fails with ``conflict_error``.
    """
    store_kind = None
    match_field = None
    open_status = None
    conflict_error = None

    def ensure_unclaimed(self, record):
        if record.status != self.open_status:
            raise self.conflict_error(f'Only {self.open_status} records can be changed.')
        if default_store.exists('matches', **{self.match_field: record.pk}):
            raise self.conflict_error()

    def perform_update(self, serializer):
        record = serializer.instance
        self.ensure_unclaimed(record)

        fields = dict(serializer.validated_data)
        fields['version'] = record.version + 1
        try:
            call_with_retry(
                lambda: default_store.patch(
                    self.store_kind,
                    record.pk,
                    fields,
                    expected={'status': self.open_status, 'version': record.version},
                ),
                f'update {self.store_kind} {record.pk}',
            )
        except StoreConflict:
            raise self.conflict_error()

        serializer.instance = default_store.get(self.store_kind, record.pk)
        logger.info(f"{self.store_kind} {record.pk} updated by {self.request.user.uid}")

    def perform_destroy(self, instance):
        self.ensure_unclaimed(instance)
        try:
            call_with_retry(
                lambda: default_store.delete(
                    self.store_kind,
                    instance.pk,
                    expected={'status': self.open_status, 'version': instance.version},
                ),
                f'delete {self.store_kind} {instance.pk}',
            )
        except StoreConflict:
            raise self.conflict_error()
        logger.info(f"{self.store_kind} {instance.pk} deleted by {self.request.user.uid}")


class PackageDetailView(VersionedDetailMixin, generics.RetrieveUpdateDestroyAPIView):
    """
    Retrieve, edit or delete a package request.

    GET/PATCH/PUT/DELETE /api/packages/<id>/
    Only the owner may edit or delete, and only while the package is
    pending and unclaimed.

    Error responses:
    - 403: Not the owner
    - 409: already_matched
    """
    serializer_class = PackageRequestSerializer
    permission_classes = [IsAuthenticated, IsOwnerOrReadOnly]
    queryset = PackageRequest.objects.all()

    store_kind = 'packages'
    match_field = 'package_id'
    open_status = sm.PACKAGE_PENDING
    conflict_error = AlreadyMatched


class TripDetailView(VersionedDetailMixin, generics.RetrieveUpdateDestroyAPIView):
    """
    Retrieve, edit or delete a trip offer.

    GET/PATCH/PUT/DELETE /api/trips/<id>/
    Only the owner may edit or delete, and only while the trip is active
    and no package is booked on it.

    Error responses:
    - 403: Not the owner
    - 409: trip_booked
    """
    serializer_class = TripOfferSerializer
    permission_classes = [IsAuthenticated, IsOwnerOrReadOnly]
    queryset = TripOffer.objects.all()

    store_kind = 'trips'
    match_field = 'trip_id'
    open_status = sm.TRIP_ACTIVE
    conflict_error = TripBooked


class TripListCreateView(generics.ListCreateAPIView):
    """
    List trip offers or post a new one.

    GET /api/trips/?status=active&mine=true
    POST /api/trips/
    """
    serializer_class = TripOfferSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        queryset = TripOffer.objects.all()
        status_filter = self.request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        if self.request.query_params.get('mine') in ('1', 'true'):
            queryset = queryset.filter(owner_id=self.request.user.uid)
        return queryset

    def perform_create(self, serializer):
        trip = serializer.save(owner=self.request.user)
        logger.info(
            f"Trip {trip.pk} posted by {self.request.user.uid}: "
            f"{trip.origin} -> {trip.destination} on {trip.date} (capacity {trip.capacity})"
        )


# ============================================================================
# Compatibility
# ============================================================================

class CompatibleTripsView(generics.ListAPIView):
    """
    Trips that could carry a package, oldest first.

    GET /api/packages/<id>/compatible-trips/
    """
    serializer_class = TripOfferSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        package = default_store.get('packages', self.kwargs['pk'])
        return compatible_for_package(package)


class CompatiblePackagesView(generics.ListAPIView):
    """
    Packages a trip could carry, oldest first.

    GET /api/trips/<id>/compatible-packages/
    """
    serializer_class = PackageRequestSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        trip = default_store.get('trips', self.kwargs['pk'])
        return compatible_for_trip(trip)


# ============================================================================
# Matches
# ============================================================================

class MatchListCreateView(generics.ListCreateAPIView):
    """
    List the user's matches or propose a new one.

    POST /api/matches/
    Headers: Authorization: Bearer <access_token>
    Request body: {"package_id": 1, "trip_id": 2}

    Success response (201): the match, including its conversation id.

    Error responses:
    - 400: Invalid data, or the traveler owns the package (self_match)
    - 404: Package or trip not found
    - 409: already_matched / trip_full
    - 202: partial_match, the match exists but is not fully committed;
      retrying the same request resumes it
    - 503: store_unavailable
    """
    serializer_class = MatchSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        uid = self.request.user.uid
        return (
            Match.objects.filter(traveler_id=uid) | Match.objects.filter(sender_id=uid)
        ).order_by('-created_at', '-id')

    def create(self, request, *args, **kwargs):
        serializer = MatchProposalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        outcome = coordinator.propose_match(
            serializer.validated_data['package_id'],
            serializer.validated_data['trip_id'],
            request.user.uid,
        )

        data = MatchSerializer(outcome.match).data
        data['resumed'] = outcome.resumed
        return Response(data, status=status.HTTP_201_CREATED)


class ConfirmDeliveryView(APIView):
    """
    Confirm delivery of a match.

    POST /api/matches/<id>/confirm-delivery/
    Only the sender or the traveler may confirm. Confirming twice is
    harmless.
    """
    permission_classes = [IsAuthenticated, IsMatchParticipant]

    def post(self, request, pk, *args, **kwargs):
        match = default_store.get('matches', pk)
        self.check_object_permissions(request, match)

        match = coordinator.confirm_delivery(match.pk, actor_uid=request.user.uid)
        return Response(MatchSerializer(match).data, status=status.HTTP_200_OK)


# ============================================================================
# Reviews and ratings
# ============================================================================

class ReviewCreateView(APIView):
    """
    Review the other party of a completed delivery.

    POST /api/reviews/
    Request body: {
        "subject_uid": "9f1c...",
        "rating": 5,
        "package_id": 1,
        "comment": "Smooth handover"
    }

    Success response (201): {"new_average": 4.0, "new_count": 3}

    Error responses:
    - 400: Invalid rating, self-review or no completed delivery together
    - 404: Subject not found
    - 409: duplicate_review
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, *args, **kwargs):
        serializer = ReviewCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        summary = aggregator.record_review(
            request.user.uid,
            data['subject_uid'],
            data['rating'],
            package_id=data.get('package_id'),
            trip_id=data.get('trip_id'),
            comment=data.get('comment', ''),
        )
        return Response(RatingSummarySerializer(summary).data, status=status.HTTP_201_CREATED)


class UserRatingView(APIView):
    """
    Public rating summary of a user.

    GET /api/users/<uid>/rating/
    """
    permission_classes = [AllowAny]

    def get(self, request, uid, *args, **kwargs):
        summary = aggregator.summary_for(uid)
        return Response(RatingSummarySerializer(summary).data)


class UserReviewsView(generics.ListAPIView):
    """
    Reviews a user has received, newest first.

    GET /api/users/<uid>/reviews/
    """
    serializer_class = ReviewSerializer
    permission_classes = [AllowAny]

    def get_queryset(self):
        subject = default_store.get('users', self.kwargs['uid'], field='uid')
        return (
            Review.objects.filter(subject_id=subject.uid)
            .select_related('author')
            .order_by('-created_at', '-id')
        )


# ============================================================================
# Conversations
# ============================================================================

class ConversationListView(generics.ListAPIView):
    """
    Conversations of the authenticated user, most recently active first.

    GET /api/conversations/
    """
    serializer_class = ConversationSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        return conversations_for(self.request.user.uid)


class ConversationMessagesView(generics.ListCreateAPIView):
    """
    Read or post messages in a conversation.

    GET /api/conversations/<id>/messages/
    POST /api/conversations/<id>/messages/
    Request body: {"content": "Delivered!", "kind": "quickAction",
                   "action": "delivery_confirmed"}

    A ``delivery_confirmed`` quick action also confirms delivery of the
    conversation's match.
    """
    serializer_class = MessageSerializer
    permission_classes = [IsAuthenticated]

    def get_conversation(self):
        return get_conversation_for(self.kwargs['pk'], self.request.user.uid)

    def get_queryset(self):
        return messages_in(self.get_conversation())

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        message = post_message(
            self.kwargs['pk'],
            request.user.uid,
            serializer.validated_data['content'],
            kind=serializer.validated_data.get('kind'),
            action=serializer.validated_data.get('action', ''),
        )
        return Response(MessageSerializer(message).data, status=status.HTTP_201_CREATED)


class ConversationReadView(APIView):
    """
    Mark the other participant's messages as read.

    POST /api/conversations/<id>/read/
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, pk, *args, **kwargs):
        marked = mark_read(pk, request.user.uid)
        return Response({'marked_read': marked}, status=status.HTTP_200_OK)
