"""Errors raised while turning API descriptions into ApiModel objects."""

from __future__ import annotations


class SpecError(RuntimeError):
    """Base class for fatal specification problems."""

    @property
    def tag(self) -> str:
        return type(self).__name__


class MalformedSpecError(SpecError):
    """Raised when the document cannot be parsed at all."""


class UnsupportedFeatureError(SpecError):
    """Raised when a parseable document uses constructs outside the supported subset."""
