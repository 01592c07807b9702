"""UI helpers for the CLI environment."""

from .error_display import display_link_error

__all__ = ["display_link_error"]
