"""
Template registry.

Publishes immutable, versioned workflow templates after validating their
dependency graphs.
"""

import asyncio
import logging
from typing import Optional

from caseflow.core.dag import TemplateGraphReport, validate_template
from caseflow.core.errors import TemplateNotFoundError
from caseflow.core.models import EventKind, WorkflowEvent, WorkflowTemplate, utcnow
from caseflow.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


class TemplateRegistry:
    """
    Append-only registry of workflow templates.

    Publishing an id that already exists stores version N+1; earlier
    versions stay available to the instances created from them.
    """

    def __init__(self, store: WorkflowStore):
        self.store = store
        self._publish_lock = asyncio.Lock()

    async def publish(
        self,
        template: WorkflowTemplate,
        actor: str = "system",
    ) -> WorkflowTemplate:
        """
        Validate and publish a template.

        Args:
            template: Template definition; its version field is ignored
            actor: Publishing principal

        Returns:
            The stored template with version and publication metadata

        Raises:
            CyclicDependencyError: If the stage or task graph has a cycle
            TemplateValidationError: On dangling references or self loops
        """
        report = validate_template(template)
        for warning in report.warnings:
            logger.warning(f"Template {template.id}: {warning.message}")

        async with self._publish_lock:
            latest = await self.store.get_template(template.id)
            version = latest.version + 1 if latest else 1

            published = template.model_copy(update={
                "version": version,
                "published_at": utcnow(),
                "published_by": actor,
            })
            await self.store.add_template(published)

        await self.store.append_events([
            WorkflowEvent(
                kind=EventKind.TEMPLATE_PUBLISHED,
                actor=actor,
                data={"template_id": published.id, "version": version},
            )
        ])
        logger.info(f"Published template {published.id} version {version}")
        return published

    def validate(self, template: WorkflowTemplate) -> TemplateGraphReport:
        """Validate without publishing."""
        return validate_template(template)

    async def get(self, template_id: str, version: Optional[int] = None) -> WorkflowTemplate:
        """Latest version, or a specific one."""
        template = await self.store.get_template(template_id, version)
        if template is None:
            raise TemplateNotFoundError(template_id, version)
        return template

    async def list_versions(self, template_id: str) -> list[WorkflowTemplate]:
        versions = await self.store.list_template_versions(template_id)
        if not versions:
            raise TemplateNotFoundError(template_id)
        return versions

    async def list_templates(self) -> list[WorkflowTemplate]:
        return await self.store.list_templates()
