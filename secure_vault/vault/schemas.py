"""
Typed requests for creating and updating vault rows.

Views build one of these from the submitted form before calling a service, so
a misspelt or missing field is rejected with a ``ValidationError`` instead of
being written (or silently dropped) further down.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional

from django.core.exceptions import ValidationError

from vault.models import Note, PasswordEntry, StoredFile

CONTROL_FIELDS = frozenset({'action', 'id', 'csrfmiddlewaretoken'})
LIST_FIELDS = frozenset({'tags'})


def _read(data: Mapping, name: str):
    if name in LIST_FIELDS:
        values = data.getlist(name) if hasattr(data, 'getlist') else data[name]
        if isinstance(values, str):
            values = [values]
        tags: List[str] = []
        for value in values:
            for tag in str(value).split(','):
                tag = tag.strip()
                if tag and tag not in tags:
                    tags.append(tag)
        return tags

    value = data[name]
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be text")
    return value


def _collect(data: Mapping, allowed: Iterable[str]) -> Dict[str, Any]:
    allowed = set(allowed)
    supplied = set(data.keys()) - CONTROL_FIELDS
    unknown = supplied - allowed
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    return {name: _read(data, name) for name in supplied}


def _check_lengths(model, values: Dict[str, Any]) -> None:
    for name, value in values.items():
        max_length = getattr(model._meta.get_field(name), 'max_length', None)
        if max_length and isinstance(value, str) and len(value) > max_length:
            raise ValidationError(f"{name} must be at most {max_length} characters")


def _require(values: Dict[str, Any], names: Iterable[str], message: str) -> None:
    if any(not values.get(name) for name in names):
        raise ValidationError(message)


def _field_names(cls) -> List[str]:
    return [f.name for f in fields(cls)]


class _Update:
    """Mixin for partial updates: ``None`` means "leave unchanged"."""

    def changes(self) -> Dict[str, Any]:
        return {name: value for name, value in vars(self).items() if value is not None}

    def __bool__(self):
        return bool(self.changes())


# Passwords

PASSWORD_REQUIRED_MESSAGE = 'Title, username, and password are required'


@dataclass(frozen=True)
class PasswordInput:
    title: str
    username: str
    password: str
    url: str = ''
    notes: str = ''
    category: str = ''

    @classmethod
    def from_data(cls, data: Mapping) -> 'PasswordInput':
        values = _collect(data, _field_names(cls))
        _require(values, ('title', 'username', 'password'), PASSWORD_REQUIRED_MESSAGE)
        _check_lengths(PasswordEntry, values)
        return cls(**values)


@dataclass(frozen=True)
class PasswordUpdate(_Update):
    title: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def from_data(cls, data: Mapping) -> 'PasswordUpdate':
        values = _collect(data, _field_names(cls))
        present = [name for name in ('title', 'username', 'password') if name in values]
        _require(values, present, PASSWORD_REQUIRED_MESSAGE)
        _check_lengths(PasswordEntry, values)
        return cls(**values)


# Notes

@dataclass(frozen=True)
class NoteInput:
    title: str
    subtitle: str = ''
    content: str = ''
    category: str = ''
    tags: List[str] = field(default_factory=list)
    background_color: str = Note.DEFAULT_BACKGROUND
    font_family: str = Note.DEFAULT_FONT_FAMILY
    font_size: str = Note.DEFAULT_FONT_SIZE

    @classmethod
    def from_data(cls, data: Mapping) -> 'NoteInput':
        values = _collect(data, _field_names(cls))
        _require(values, ('title',), 'Title is required')
        _check_lengths(Note, values)
        return cls(**values)


@dataclass(frozen=True)
class NoteUpdate(_Update):
    title: Optional[str] = None
    subtitle: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    background_color: Optional[str] = None
    font_family: Optional[str] = None
    font_size: Optional[str] = None

    @classmethod
    def from_data(cls, data: Mapping) -> 'NoteUpdate':
        values = _collect(data, _field_names(cls))
        if 'title' in values:
            _require(values, ('title',), 'Title is required')
        _check_lengths(Note, values)
        return cls(**values)


# Files

@dataclass(frozen=True)
class FileMetadataUpdate(_Update):
    notes: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def from_data(cls, data: Mapping) -> 'FileMetadataUpdate':
        values = _collect(data, _field_names(cls))
        _check_lengths(StoredFile, values)
        return cls(**values)
