"""Generation service client."""

from speakforme.generation.client import HttpSuggestionGenerator

__all__ = ["HttpSuggestionGenerator"]
