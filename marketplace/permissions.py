"""
Custom permission classes for the parcel marketplace API.
"""

from rest_framework import permissions


class IsOwnerOrReadOnly(permissions.BasePermission):
    """
    Object-level permission for package requests and trip offers.

    Anyone authenticated may read; only the record's owner may change or
    delete it.

    Usage:
        class PackageDetailView(generics.RetrieveUpdateDestroyAPIView):
            permission_classes = [IsAuthenticated, IsOwnerOrReadOnly]
    """

    message = 'Only the owner can modify this record.'

    def has_object_permission(self, request, view, obj):
        if request.method in permissions.SAFE_METHODS:
            return True

        return obj.owner_id == request.user.uid


class IsMatchParticipant(permissions.BasePermission):
    """
    Object-level permission allowing only the sender or the traveler of a
    match (or the two participants of a conversation).
    """

    message = 'You are not part of this match.'

    def has_object_permission(self, request, view, obj):
        """
        Args:
            request: HTTP request object
            view: View being accessed
            obj: Match or Conversation instance

        Returns:
            bool: True if the user takes part in it
        """
        uid = getattr(request.user, 'uid', None)
        if uid is None:
            return False

        if hasattr(obj, 'participants'):
            return uid in obj.participants()

        return obj.has_participant(uid)
