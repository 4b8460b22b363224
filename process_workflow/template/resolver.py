"""
Variable substitution for notification and expression templates.

Resolves {token} and {champ:field_name} placeholders without eval/exec.
Unknown placeholders are left verbatim; resolution never fails.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from process_workflow.core.models import CustomFieldDefinition

logger = logging.getLogger(__name__)

# System vocabulary: token -> description shown to authors
SYSTEM_VARIABLES: dict[str, str] = {
    "processus": "Nom du processus",
    "tache": "Nom de la tâche",
    "demandeur": "Nom du demandeur",
    "date": "Date du jour",
    "echeance": "Date d'échéance",
    "statut": "Statut actuel",
    "priorite": "Priorité",
    "lien": "Lien vers l'élément",
    "projet": "Nom du projet",
    "sous_processus": "Nom du sous-processus",
    "assignee": "Personne assignée",
}

CUSTOM_FIELD_PREFIX = "champ"


@dataclass
class TemplateReference:
    """Represents a parsed template placeholder."""

    full_match: str
    kind: str        # "system", "custom_field" or "variable"
    name: str
    start_pos: int
    end_pos: int


@dataclass
class TemplateContext:
    """Values available to a template at resolution time."""

    system: dict[str, Any] = field(default_factory=dict)
    custom_fields: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)


class VariableResolver:
    """
    Resolves template placeholders.

    Supports:
    - {processus}, {tache}, ... - system variables
    - {champ:code_projet} - custom field values of the process template
    - {my_variable} - workflow variables set by set_variable nodes, as long as
      the name does not shadow a system variable

    Missing values and unrecognised placeholders are kept as written.
    """

    # Pattern to match {reference} and {champ:reference}
    TEMPLATE_PATTERN = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)(?::([a-zA-Z0-9_\-]+))?\}")

    def __init__(self, context: Optional[TemplateContext] = None):
        self.context = context or TemplateContext()

    def resolve(self, template: Optional[str]) -> str:
        """Resolve every placeholder in a string."""
        if not template:
            return template or ""

        references = self.find_references(template)
        if not references:
            return template

        result = template
        for ref in reversed(references):  # Reverse to maintain positions
            value = self._resolve_reference(ref)
            if value is None:
                logger.debug(f"Unresolved template placeholder {ref.full_match}")
                continue
            result = result[:ref.start_pos] + self._format(value) + result[ref.end_pos:]
        return result

    def find_references(self, template: str) -> list[TemplateReference]:
        """Find all recognised placeholders in a string."""
        references = []

        for match in self.TEMPLATE_PATTERN.finditer(template):
            prefix, suffix = match.group(1), match.group(2)
            if suffix is not None:
                if prefix != CUSTOM_FIELD_PREFIX:
                    continue
                kind, name = "custom_field", suffix
            elif prefix in SYSTEM_VARIABLES:
                kind, name = "system", prefix
            else:
                kind, name = "variable", prefix

            references.append(TemplateReference(
                full_match=match.group(0),
                kind=kind,
                name=name,
                start_pos=match.start(),
                end_pos=match.end(),
            ))

        return references

    def _resolve_reference(self, ref: TemplateReference) -> Any:
        if ref.kind == "system":
            return self.context.system.get(ref.name)
        if ref.kind == "custom_field":
            return self.context.custom_fields.get(ref.name)
        return self.context.variables.get(ref.name)

    @staticmethod
    def _format(value: Any) -> str:
        if isinstance(value, bool):
            return "Oui" if value else "Non"
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)


def resolve(template: Optional[str], context: Optional[TemplateContext] = None) -> str:
    """
    Resolve a template against a context.

    Convenience function for the node semantics.
    """
    return VariableResolver(context).resolve(template)


def available_variables(
    custom_fields: Optional[list[CustomFieldDefinition]] = None,
    variable_names: Optional[list[str]] = None,
) -> list[dict[str, str]]:
    """List the placeholders an author can insert into a template."""
    available = [
        {"token": f"{{{name}}}", "label": label, "kind": "system"}
        for name, label in SYSTEM_VARIABLES.items()
    ]
    for custom_field in custom_fields or []:
        available.append({
            "token": f"{{{CUSTOM_FIELD_PREFIX}:{custom_field.name}}}",
            "label": custom_field.label,
            "kind": "custom_field",
        })
    for name in variable_names or []:
        if name and name not in SYSTEM_VARIABLES:
            available.append({"token": f"{{{name}}}", "label": name, "kind": "variable"})
    return available
