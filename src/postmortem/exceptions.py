"""Post-mortem exceptions."""

from __future__ import annotations


class PostMortemError(Exception):
    """Base exception for post-mortem generation errors."""


class IncidentNotResolvedError(PostMortemError):
    """Post-mortems are only derived from resolved incidents."""


class PostMortemExistsError(PostMortemError):
    """The incident already carries a post-mortem."""


class InvalidStatusTransitionError(PostMortemError):
    """Post-mortem status may only move forward."""
