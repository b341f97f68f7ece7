"""Read path for stored conversation threads."""

from .router import router

__all__ = ["router"]
