"""Template variable substitution."""

from process_workflow.template.resolver import (
    SYSTEM_VARIABLES,
    TemplateContext,
    VariableResolver,
    available_variables,
    resolve,
)

__all__ = [
    "SYSTEM_VARIABLES",
    "TemplateContext",
    "VariableResolver",
    "available_variables",
    "resolve",
]
