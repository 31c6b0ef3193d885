"""Engine assembly and lifecycle."""

from src.engine.engine import IncidentResponseEngine
from src.engine.factory import create_engine

__all__ = [
    "IncidentResponseEngine",
    "create_engine",
]
