"""Eternal Storyteller - interactive AI bedtime stories"""

__version__ = "1.0.0"
