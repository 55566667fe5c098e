"""
Rating aggregator.

Keeps ``User.rating`` / ``User.review_count`` as a running average of the
reviews a user has received. Each review is folded in at most once: the
``applied`` flag on the Review records whether it is already counted, and
the incremental update only lands if the stored count is still the one it
was computed from. Whenever that cannot be guaranteed the aggregate is
re-derived from scratch, so the stored values always converge.
"""

import logging
import time
from dataclasses import dataclass

from django.core.exceptions import ValidationError

from . import state_machines as sm
from .exceptions import DuplicateReview, StoreConflict
from .models import Review
from .retry import call_with_retry
from .store import default_store
from .validators import validate_rating

logger = logging.getLogger(__name__)


@dataclass
class RatingSummary:
    new_average: float
    new_count: int

    @classmethod
    def from_values(cls, average, count):
        return cls(new_average=round(average, 1), new_count=count)


class RatingAggregator:
    """Records reviews and maintains each subject's aggregate rating."""

    def __init__(self, store=None, sleep=time.sleep):
        self.store = store or default_store
        self.sleep = sleep

    def record_review(self, author_uid, subject_uid, rating, package_id=None,
                      trip_id=None, comment=''):
        """
        Store a review and fold it into the subject's rating.

        Args:
            author_uid: uid of the reviewer
            subject_uid: uid of the reviewed user
            rating: Integer from 1 to 5
            package_id: PackageRequest the review is about (optional)
            trip_id: TripOffer the review is about (optional)
            comment: Free text

        Returns:
            RatingSummary: Subject's average (one decimal) and review count

        Raises:
            ValidationError: Bad rating, self-review or no shared delivery
            DuplicateReview: This author already reviewed the subject for it
        """
        validate_rating(rating)

        if author_uid == subject_uid:
            raise ValidationError({'subject': 'You cannot review yourself.'})

        if not package_id and not trip_id:
            raise ValidationError('A review must reference a package or a trip.')

        self._read_user(author_uid)
        self._read_user(subject_uid)
        self._check_completed_match(author_uid, subject_uid, package_id, trip_id)

        dedupe_key = Review.dedupe_key_for(author_uid, subject_uid, package_id, trip_id)
        if self._call(lambda: self.store.exists('reviews', dedupe_key=dedupe_key),
                      'check duplicate review'):
            return self._resume_review(dedupe_key, rating, comment)

        try:
            review = self._call(
                lambda: self.store.create_if_absent(
                    'reviews',
                    author_id=author_uid,
                    subject_id=subject_uid,
                    package_id=package_id,
                    trip_id=trip_id,
                    rating=rating,
                    comment=comment or '',
                    dedupe_key=dedupe_key,
                ),
                'create review',
            )
        except StoreConflict:
            return self._resume_review(dedupe_key, rating, comment)

        logger.info(
            f"Review {review.pk} recorded: {author_uid} rated {subject_uid} {rating}"
        )
        return self.apply(review)

    def _resume_review(self, dedupe_key, rating, comment):
        """
        Handle a review whose dedupe key is already stored.

        A stored review that was never folded into the aggregate (its
        earlier rating update failed) is applied now. Repeating the same
        review then returns the summary; anything else is a duplicate.
        """
        existing = self._call(
            lambda: self.store.get('reviews', dedupe_key, field='dedupe_key'),
            'read existing review',
        )
        if existing.applied:
            logger.warning(
                f"Duplicate review from {existing.author_id} for {existing.subject_id} rejected"
            )
            raise DuplicateReview()

        logger.info(
            f"Review {existing.pk} was stored but never counted, applying it now"
        )
        summary = self.apply(existing)
        if existing.rating != rating or existing.comment != (comment or ''):
            raise DuplicateReview()
        return summary

    def apply(self, review):
        """
        Fold one stored review into its subject's aggregate.

        Uses the O(1) incremental formula when this review is the only one
        not yet counted and the stored count agrees with the counted reviews;
        otherwise recalculates.
        """
        subject_uid = review.subject_id
        user = self._read_user(subject_uid)

        unapplied = self._call(
            lambda: self.store.query('reviews', subject_id=subject_uid, applied=False),
            'query unapplied reviews',
        )
        applied_count = self._call(
            lambda: self.store.count('reviews', subject_id=subject_uid, applied=True),
            'count applied reviews',
        )

        only_this_one = [r.pk for r in unapplied] == [review.pk]
        if not only_this_one or user.review_count != applied_count:
            logger.info(
                f"Rating of {subject_uid} needs a full recalculation "
                f"(stored count {user.review_count}, applied {applied_count}, "
                f"unapplied {len(unapplied)})"
            )
            return self.recalculate(subject_uid)

        old_count = user.review_count
        new_count = old_count + 1
        new_average = (user.rating * old_count + review.rating) / new_count

        try:
            self._call(
                lambda: self.store.patch(
                    'users',
                    user.pk,
                    {'rating': new_average, 'review_count': new_count},
                    expected={'review_count': old_count},
                ),
                f'update rating of {subject_uid}',
            )
        except StoreConflict:
            logger.info(f"Rating of {subject_uid} changed concurrently, recalculating")
            return self.recalculate(subject_uid)

        self._mark_applied(review.pk)
        logger.info(
            f"Rating of {subject_uid} updated to {new_average:.2f} over {new_count} reviews"
        )
        return RatingSummary.from_values(new_average, new_count)

    def recalculate(self, subject_uid):
        """
        Re-derive a user's average and count from every review they received.

        Returns:
            RatingSummary
        """
        user = self._read_user(subject_uid)
        reviews = self._call(
            lambda: self.store.query('reviews', subject_id=subject_uid),
            'query reviews',
        )

        count = len(reviews)
        average = sum(r.rating for r in reviews) / count if count else 0.0

        self._call(
            lambda: self.store.patch(
                'users', user.pk, {'rating': average, 'review_count': count}
            ),
            f'recalculate rating of {subject_uid}',
        )
        for review in reviews:
            if not review.applied:
                self._mark_applied(review.pk)

        logger.info(f"Recalculated rating of {subject_uid}: {average:.2f} over {count} reviews")
        return RatingSummary.from_values(average, count)

    def summary_for(self, subject_uid):
        user = self._read_user(subject_uid)
        return RatingSummary.from_values(user.rating, user.review_count)

    def _check_completed_match(self, author_uid, subject_uid, package_id, trip_id):
        filters = {'status': sm.MATCH_COMPLETED}
        if package_id:
            filters['package_id'] = package_id
        if trip_id:
            filters['trip_id'] = trip_id

        matches = self._call(lambda: self.store.query('matches', **filters), 'query matches')
        pair = {author_uid, subject_uid}
        if not any(match.participants() == pair for match in matches):
            raise ValidationError(
                'You can only review someone after a completed delivery with them.'
            )

    def _mark_applied(self, review_pk):
        try:
            self._call(
                lambda: self.store.patch(
                    'reviews', review_pk, {'applied': True}, expected={'applied': False}
                ),
                f'mark review {review_pk} applied',
            )
        except StoreConflict:
            # Already counted by a concurrent recalculation
            pass

    def _read_user(self, uid):
        return self._call(lambda: self.store.get('users', uid, field='uid'), f'read user {uid}')

    def _call(self, operation, description):
        return call_with_retry(operation, description, sleep=self.sleep)


aggregator = RatingAggregator()


def recalculate_user_rating(uid):
    """Recalculate one user's aggregate rating from all their reviews."""
    return aggregator.recalculate(uid)
