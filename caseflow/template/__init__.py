"""Versioned workflow template registry."""

from caseflow.template.registry import TemplateRegistry

__all__ = ["TemplateRegistry"]
