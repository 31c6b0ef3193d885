"""Post-incident report generation."""

from src.postmortem.exceptions import (
    IncidentNotResolvedError,
    InvalidStatusTransitionError,
    PostMortemError,
    PostMortemExistsError,
)
from src.postmortem.generator import PostMortemGenerator, business_impact

__all__ = [
    "IncidentNotResolvedError",
    "InvalidStatusTransitionError",
    "PostMortemError",
    "PostMortemExistsError",
    "PostMortemGenerator",
    "business_impact",
]
