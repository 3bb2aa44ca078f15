"""Declarative ARM templates for the lab, built as plain dicts."""

from .builder import (
    build_lab_template,
    build_subscription_template,
    lab_resource_ids,
    render_templates,
    template_dependency_errors,
)

__all__ = [
    "build_lab_template",
    "build_subscription_template",
    "lab_resource_ids",
    "render_templates",
    "template_dependency_errors",
]
