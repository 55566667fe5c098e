"""
URL configuration for parcel_marketplace project.
"""
from django.contrib import admin
from django.urls import path
from rest_framework_simplejwt.views import (
    TokenObtainPairView,
    TokenRefreshView,
    TokenVerifyView,
)
from marketplace.views import (
    CompatiblePackagesView,
    CompatibleTripsView,
    ConfirmDeliveryView,
    ConversationListView,
    ConversationMessagesView,
    ConversationReadView,
    MatchListCreateView,
    PackageDetailView,
    PackageListCreateView,
    ReviewCreateView,
    TripDetailView,
    TripListCreateView,
    UserRatingView,
    UserReviewsView,
)


urlpatterns = [
    path('admin/', admin.site.urls),

    # Package and trip endpoints
    path('api/packages/', PackageListCreateView.as_view(), name='package_list'),
    path('api/packages/<int:pk>/', PackageDetailView.as_view(), name='package_detail'),
    path('api/packages/<int:pk>/compatible-trips/', CompatibleTripsView.as_view(), name='compatible_trips'),
    path('api/trips/', TripListCreateView.as_view(), name='trip_list'),
    path('api/trips/<int:pk>/', TripDetailView.as_view(), name='trip_detail'),
    path('api/trips/<int:pk>/compatible-packages/', CompatiblePackagesView.as_view(), name='compatible_packages'),

    # Match endpoints
    path('api/matches/', MatchListCreateView.as_view(), name='match_list'),
    path('api/matches/<int:pk>/confirm-delivery/', ConfirmDeliveryView.as_view(), name='confirm_delivery'),

    # Review endpoints
    path('api/reviews/', ReviewCreateView.as_view(), name='review_create'),
    path('api/users/<str:uid>/rating/', UserRatingView.as_view(), name='user_rating'),
    path('api/users/<str:uid>/reviews/', UserReviewsView.as_view(), name='user_reviews'),

    # Conversation endpoints
    path('api/conversations/', ConversationListView.as_view(), name='conversation_list'),
    path('api/conversations/<int:pk>/messages/', ConversationMessagesView.as_view(), name='conversation_messages'),
    path('api/conversations/<int:pk>/read/', ConversationReadView.as_view(), name='conversation_read'),

    # JWT Authentication endpoints
    path('api/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('api/token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('api/token/verify/', TokenVerifyView.as_view(), name='token_verify'),
]
