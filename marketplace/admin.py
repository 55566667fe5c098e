"""
Django admin configuration for the parcel marketplace.

Statuses and aggregate ratings are maintained by the coordinator and the
rating aggregator, so they are read-only here.
"""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.utils.translation import gettext_lazy as _

from .models import Conversation, Match, Message, PackageRequest, Review, TripOffer, User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    Custom admin interface for User model.

    Extends Django's UserAdmin with the marketplace profile and rating.
    """

    list_display = [
        'username',
        'display_name',
        'uid',
        'rating',
        'review_count',
        'is_staff',
        'is_active',
        'created_at',
    ]

    list_filter = ['is_staff', 'is_superuser', 'is_active', 'created_at']

    search_fields = ['username', 'email', 'display_name', 'uid']

    ordering = ['-created_at']

    readonly_fields = ['uid', 'rating', 'review_count', 'created_at', 'updated_at']

    fieldsets = BaseUserAdmin.fieldsets + (
        (_('Marketplace Profile'), {
            'fields': ('uid', 'display_name', 'photo_url')
        }),
        (_('Rating'), {
            'fields': ('rating', 'review_count'),
        }),
        (_('Important Dates'), {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )


@admin.register(PackageRequest)
class PackageRequestAdmin(admin.ModelAdmin):
    list_display = ['id', 'owner', 'origin', 'destination', 'deadline', 'size', 'price', 'status', 'created_at']
    list_filter = ['status', 'size', 'deadline']
    search_fields = ['origin', 'destination', 'description', 'owner__uid', 'owner__username']
    readonly_fields = ['status', 'created_at', 'updated_at']
    ordering = ['-created_at']


@admin.register(TripOffer)
class TripOfferAdmin(admin.ModelAdmin):
    list_display = ['id', 'owner', 'origin', 'destination', 'date', 'capacity', 'status', 'created_at']
    list_filter = ['status', 'date']
    search_fields = ['origin', 'destination', 'notes', 'owner__uid', 'owner__username']
    readonly_fields = ['status', 'created_at', 'updated_at']
    ordering = ['-created_at']


@admin.register(Match)
class MatchAdmin(admin.ModelAdmin):
    """
    Matches are created only through the lifecycle coordinator; the admin
    is for inspection and support.
    """

    list_display = ['id', 'package', 'trip', 'sender', 'traveler', 'status', 'created_at', 'completed_at']
    list_filter = ['status', 'created_at']
    search_fields = ['claim_key', 'sender__uid', 'traveler__uid']
    readonly_fields = [
        'package', 'trip', 'sender', 'traveler', 'status', 'claim_key', 'slot_key',
        'created_at', 'accepted_at', 'completed_at',
    ]

    def has_add_permission(self, request):
        return False


class MessageInline(admin.TabularInline):
    model = Message
    extra = 0
    fields = ['sender', 'kind', 'action', 'content', 'timestamp', 'read']
    readonly_fields = fields


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ['id', 'participant_low', 'participant_high', 'match', 'last_message_at']
    search_fields = ['participant_low__uid', 'participant_high__uid', 'last_message']
    readonly_fields = ['participant_low', 'participant_high', 'match', 'package', 'trip',
                       'last_message', 'last_message_at', 'created_at']
    inlines = [MessageInline]


@admin.register(Review)
class ReviewAdmin(admin.ModelAdmin):
    list_display = ['id', 'author', 'subject', 'rating', 'applied', 'created_at']
    list_filter = ['rating', 'applied', 'created_at']
    search_fields = ['author__uid', 'subject__uid', 'comment']
    readonly_fields = ['author', 'subject', 'package', 'trip', 'rating', 'dedupe_key', 'applied', 'created_at']
