"""
Centralized Validation Limits

All content length limits in one place for consistency.
Import these in both API routes and Pydantic models.
"""

# =============================================================================
# USER INPUT LIMITS
# =============================================================================

GENRE_MAX_LENGTH = 50
VOICE_ID_MAX_LENGTH = 50

# Title fields
TITLE_MAX_LENGTH = 100
TITLE_MIN_LENGTH = 1

# Choice labels stored against a chapter once resolved
CHOICE_TEXT_MAX_LENGTH = 500

# =============================================================================
# CONTENT LIMITS
# =============================================================================

# Chapter narration text
CHAPTER_TEXT_MAX_LENGTH = 20000

# Every chapter ends with exactly this many forward choices
CHOICES_PER_CHAPTER = 2
