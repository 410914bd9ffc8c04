"""
Template Store - resolves message templates from the CRM store with the
built-in set as fallback.

Resolution order for a slug:
  1. Active row in message_templates
  2. Built-in default with the same slug
  3. None
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import CRMStore
from models.schemas import Stage, Template
from templates.defaults import DEFAULT_TEMPLATES, DEFAULTS_BY_SLUG

logger = structlog.get_logger()


class TemplateStore:
    def __init__(self, store: CRMStore, defaults: Optional[list[Template]] = None):
        self.store = store
        self._defaults = {t.slug: t for t in defaults} if defaults is not None else DEFAULTS_BY_SLUG

    async def get_by_slug(self, slug: str) -> Optional[Template]:
        row = await self.store.get_template(slug)
        if row and row.active:
            return row
        fallback = self._defaults.get(slug)
        if fallback:
            logger.debug("template_default_used", slug=slug)
            return fallback.model_copy(deep=True)
        return None

    async def for_stage(self, stage: Stage) -> list[Template]:
        """Active templates triggered by `stage`, ordered by sort_order."""
        templates = await self.store.list_templates(stage)
        if templates:
            return templates
        if await self.store.list_templates():
            # The store is managing templates; this stage simply has none
            return []
        defaults = [t for t in self._defaults.values() if t.trigger_stage == stage and t.active]
        defaults.sort(key=lambda t: t.sort_order)
        return [t.model_copy(deep=True) for t in defaults]

    async def seed_defaults(self, overwrite: bool = False) -> int:
        """Write the built-in set into the store; returns rows written."""
        written = 0
        for template in DEFAULT_TEMPLATES:
            if not overwrite and await self.store.get_template(template.slug):
                continue
            await self.store.upsert_template(template)
            written += 1
        logger.info("templates_seeded", written=written)
        return written
