"""Templates module for the relay service.

Contains Jinja2 rendering of stored ``{{key}}`` templates.
"""

from relay_service.templates.renderer import TemplateRenderer

__all__ = ["TemplateRenderer"]
