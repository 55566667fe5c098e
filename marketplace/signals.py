"""
Django signals for conversation bookkeeping.

Keeps each conversation's ``last_message`` preview and ``last_message_at``
in step with the messages posted to it.
"""

import logging

from django.db.models import Q
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import Conversation, Message

logger = logging.getLogger(__name__)


PREVIEW_LENGTH = 200


@receiver(post_save, sender=Message)
def update_conversation_on_message(sender, instance, created, **kwargs):
    """
    Refresh the conversation preview when a message is created.

    The update is a single conditional write: it only applies when the
    stored ``last_message_at`` is older than this message, so messages
    saved out of order never roll the preview back.

    Args:
        sender: The Message model class
        instance: The Message instance that was saved
        created: Boolean indicating if this is a new message
        **kwargs: Additional keyword arguments
    """
    if not created:
        return

    try:
        updated = Conversation.objects.filter(
            Q(last_message_at__isnull=True) | Q(last_message_at__lte=instance.timestamp),
            pk=instance.conversation_id,
        ).update(
            last_message=instance.content[:PREVIEW_LENGTH],
            last_message_at=instance.timestamp,
        )
        if updated:
            logger.debug(
                f"Conversation {instance.conversation_id} preview set to message {instance.pk}"
            )
    except Exception as e:
        logger.error(
            f"Error updating conversation {instance.conversation_id} "
            f"for message {instance.pk}: {e}",
            exc_info=True
        )
        raise
