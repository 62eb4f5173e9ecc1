"""HTTP API for Eternal Storyteller"""

from .routes import router, set_story_service, get_story_service, has_story_service

__all__ = ["router", "set_story_service", "get_story_service", "has_story_service"]
