"""
Field validators and label normalization for marketplace records.
"""

import re

from django.core.exceptions import ValidationError


def normalize_location(label):
    """
    Normalize a location label for storage.

    Collapses runs of whitespace and strips the ends. Comparison uses
    ``location_key`` on top of this, which also folds case.

    Args:
        label: Raw location label as typed or picked by the user

    Returns:
        str: Normalized label ('' for None)
    """
    if label is None:
        return ''
    return re.sub(r'\s+', ' ', str(label)).strip()


def location_key(label):
    """Return the comparison key for a location label."""
    return normalize_location(label).casefold()


def validate_location(value):
    """
    Validate a location label.

    Raises:
        ValidationError: If the label is empty or whitespace-only
    """
    if not normalize_location(value):
        raise ValidationError(
            'Location cannot be empty.',
            code='empty_location'
        )


def validate_rating(value):
    """
    Validate a review rating.

    Raises:
        ValidationError: If the rating is not an integer from 1 to 5
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            'Rating must be a whole number.',
            code='invalid_rating_type'
        )
    if value < 1 or value > 5:
        raise ValidationError(
            'Rating must be between 1 and 5.',
            code='rating_out_of_range'
        )
