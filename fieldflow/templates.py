"""Procedure template registry."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from .contracts import ProcedureTemplate, StepSpec
from .errors import NotFoundError, TemplateError

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_ID = "ppf-workflow-template"

PPF_TEMPLATE = ProcedureTemplate(
    id=DEFAULT_TEMPLATE_ID,
    name="PPF installation",
    steps=[
        StepSpec(
            id="inspection",
            order=1,
            title="Vehicle inspection",
            checklist_items=["vehicle_clean", "defects_documented"],
        ),
        StepSpec(
            id="preparation",
            order=2,
            title="Surface preparation",
            checklist_items=["surface_degreased", "film_cut"],
        ),
        StepSpec(id="installation", order=3, title="Film installation"),
        StepSpec(
            id="finalization",
            order=4,
            title="Final check and handover",
            checklist_items=["quality_checked"],
        ),
    ],
)


class TemplateRegistry:
    """Read-only lookup of procedure templates by id.

    Templates are registered at configuration time; after that the registry
    is never mutated and may be shared by any number of readers.
    """

    def __init__(self, templates: Iterable[ProcedureTemplate] = ()) -> None:
        self._templates: Dict[str, ProcedureTemplate] = {}
        for template in templates:
            self.register(template)

    def register(self, template: ProcedureTemplate) -> None:
        if template.id in self._templates:
            raise TemplateError(f"Template {template.id} is already registered")
        self._templates[template.id] = template

    def get_template(self, template_id: str) -> ProcedureTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    def list_templates(self) -> List[ProcedureTemplate]:
        return list(self._templates.values())

    @classmethod
    def from_mappings(cls, items: Iterable[dict]) -> "TemplateRegistry":
        templates = []
        for item in items:
            try:
                templates.append(ProcedureTemplate.model_validate(item))
            except ValidationError as exc:
                raise TemplateError(
                    f"Invalid template {item.get('id', '<unknown>')}: {exc}"
                ) from exc
        return cls(templates)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "TemplateRegistry":
        """Load templates from a YAML document with a top-level ``templates`` list."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        registry = cls.from_mappings(data.get("templates", []))
        logger.info(f"Loaded {len(registry._templates)} templates from {path}")
        return registry


def default_registry(templates_path: Optional[str] = None) -> TemplateRegistry:
    """Registry holding the built-in PPF template plus any templates on disk."""
    registry = TemplateRegistry([PPF_TEMPLATE])
    if templates_path:
        for template in TemplateRegistry.from_yaml(templates_path).list_templates():
            if template.id == DEFAULT_TEMPLATE_ID:
                continue
            registry.register(template)
    return registry
