"""Ownership lookups, list filters and the dashboard security score."""

import math
import re
from typing import Iterable, List, Sequence

from django.core.exceptions import ValidationError
from django.db.models import Q

NOTE_SORT_FIELDS = ('title', 'category', 'date')
SORT_ORDERS = ('asc', 'desc')
POINTS_PER_PASSWORD = 6

_UPPER = re.compile(r'[A-Z]')
_LOWER = re.compile(r'[a-z]')
_DIGIT = re.compile(r'[0-9]')
_SYMBOL = re.compile(r'[^A-Za-z0-9]')


def get_owned(model, user, item_id):
    """
    Fetch one of ``user``'s rows. Rows of other users and malformed ids both
    raise ``model.DoesNotExist`` so callers cannot tell them apart.
    """
    try:
        return model.objects.get(id=item_id, user=user)
    except (ValidationError, ValueError, TypeError):
        raise model.DoesNotExist(f"{model.__name__} matching query does not exist.") from None


def filter_passwords(queryset, search='', category=''):
    if search:
        queryset = queryset.filter(
            Q(title__icontains=search) | Q(username__icontains=search) | Q(url__icontains=search)
        )
    if category:
        queryset = queryset.filter(category=category)
    return queryset


def filter_files(queryset, search='', category=''):
    if search:
        queryset = queryset.filter(Q(name__icontains=search) | Q(content_type__icontains=search))
    if category:
        queryset = queryset.filter(category=category)
    return queryset


def filter_notes(notes: Iterable, search='', category='', tag='') -> List:
    """
    Filter opened notes in memory.

    Note bodies are sealed in the database, so the content search can only
    run after they were unsealed.
    """
    needle = search.lower()
    selected = []
    for note in notes:
        if needle and not (
            needle in note.title.lower()
            or needle in (note.subtitle or '').lower()
            or needle in (note.content or '').lower()
        ):
            continue
        if category and note.category != category:
            continue
        if tag and tag not in (note.tags or []):
            continue
        selected.append(note)
    return selected


def sort_notes(notes: Sequence, sort='date', order='desc') -> List:
    if sort not in NOTE_SORT_FIELDS:
        raise ValidationError(f"sort must be one of {', '.join(NOTE_SORT_FIELDS)}")
    if order not in SORT_ORDERS:
        raise ValidationError(f"order must be one of {', '.join(SORT_ORDERS)}")

    if sort == 'title':
        key = lambda note: note.title.casefold()  # noqa: E731
    elif sort == 'category':
        key = lambda note: (note.category or '').casefold()  # noqa: E731
    else:
        key = lambda note: note.updated_at  # noqa: E731
    return sorted(notes, key=key, reverse=(order == 'desc'))


def distinct_categories(items: Iterable) -> List[str]:
    seen = []
    for item in items:
        if item.category and item.category not in seen:
            seen.append(item.category)
    return seen


def distinct_tags(notes: Iterable) -> List[str]:
    seen = []
    for note in notes:
        for tag in note.tags or []:
            if tag not in seen:
                seen.append(tag)
    return seen


def password_strength_points(password: str) -> int:
    points = 0
    if len(password) >= 12:
        points += 2
    elif len(password) >= 8:
        points += 1
    for pattern in (_UPPER, _LOWER, _DIGIT, _SYMBOL):
        if pattern.search(password):
            points += 1
    return points


def security_score(passwords: Sequence[str]) -> int:
    """Percentage of the strength points the given passwords could earn."""
    if not passwords:
        return 0
    earned = sum(password_strength_points(password) for password in passwords)
    # Halves round up.
    return min(math.floor(earned * 100 / (len(passwords) * POINTS_PER_PASSWORD) + 0.5), 100)
