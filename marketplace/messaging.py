"""
Conversation messaging for matched users.

Conversations are created by the coordinator when a match is committed;
this module only posts and reads messages inside them. Posting a
``delivery_confirmed`` quick action completes the match before the message
is stored, so the chat never announces a delivery the records disagree with.
"""

import logging

from django.core.exceptions import PermissionDenied
from django.db.models import Q

from .coordinator import coordinator
from .models import Message
from .retry import call_with_retry
from .store import default_store

logger = logging.getLogger(__name__)


def get_conversation_for(conversation_id, uid, store=default_store):
    """
    Load a conversation the user takes part in.

    Raises:
        EntityNotFound: If the conversation does not exist
        PermissionDenied: If ``uid`` is not one of its participants
    """
    conversation = call_with_retry(
        lambda: store.get('conversations', conversation_id),
        f'read conversation {conversation_id}',
    )
    if not conversation.has_participant(uid):
        logger.warning(f"User {uid} denied access to conversation {conversation_id}")
        raise PermissionDenied('You are not a participant of this conversation.')
    return conversation


def conversations_for(uid, store=default_store):
    """Conversations ``uid`` takes part in, most recently active first."""
    return call_with_retry(
        lambda: store.query(
            'conversations',
            Q(participant_low_id=uid) | Q(participant_high_id=uid),
            order_by=['-last_message_at', '-created_at'],
        ),
        f'list conversations of {uid}',
    )


def messages_in(conversation, store=default_store):
    return call_with_retry(
        lambda: store.query(
            'messages', conversation_id=conversation.pk, order_by=['timestamp', 'id']
        ),
        f'list messages of conversation {conversation.pk}',
    )


def post_message(conversation_id, sender_uid, content, kind=Message.KIND_TEXT,
                 action='', store=default_store):
    """
    Post a message to a conversation.

    Args:
        conversation_id: Conversation id
        sender_uid: uid of the posting participant
        content: Message text
        kind: ``text``, ``location`` or ``quickAction``
        action: Quick action name when ``kind`` is ``quickAction``

    Returns:
        Message: The stored message

    Raises:
        PermissionDenied: If the sender is not a participant
        ValidationError: If the message is malformed
    """
    conversation = get_conversation_for(conversation_id, sender_uid, store=store)

    if kind == Message.KIND_QUICK_ACTION and action == Message.ACTION_DELIVERY_CONFIRMED:
        if conversation.match_id is None:
            raise PermissionDenied('This conversation is not linked to a match.')
        coordinator.confirm_delivery(conversation.match_id, actor_uid=sender_uid)

    message = call_with_retry(
        lambda: store.create(
            'messages',
            conversation_id=conversation.pk,
            sender_id=sender_uid,
            content=content,
            kind=kind,
            action=action or '',
        ),
        f'post message to conversation {conversation.pk}',
    )
    logger.info(f"Message {message.pk} ({kind}) posted to conversation {conversation.pk} by {sender_uid}")
    return message


def mark_read(conversation_id, reader_uid, store=default_store):
    """
    Mark the other participant's unread messages as read.

    Returns:
        int: Number of messages marked
    """
    conversation = get_conversation_for(conversation_id, reader_uid, store=store)
    unread = call_with_retry(
        lambda: store.query(
            'messages',
            conversation_id=conversation.pk,
            sender_id=conversation.other_participant(reader_uid),
            read=False,
        ),
        f'list unread messages of conversation {conversation.pk}',
    )

    for message in unread:
        call_with_retry(
            lambda: store.patch('messages', message.pk, {'read': True}),
            f'mark message {message.pk} read',
        )

    if unread:
        logger.debug(f"{len(unread)} messages marked read in conversation {conversation.pk} by {reader_uid}")
    return len(unread)
