"""
Projects Processor

Opportunity events on their own queue, so pipeline moves are not stuck
behind bulk general traffic.
"""
from crm_sync.models.queue import QueueType
from crm_sync.processors.base import BaseProcessor, HandlerRegistry
from crm_sync.processors.opportunities import opportunity_registry


class ProjectsProcessor(BaseProcessor):
    queue_type = QueueType.PROJECTS

    def build_registry(self) -> HandlerRegistry:
        opportunities = opportunity_registry()
        return (
            HandlerRegistry("projects")
            .include(opportunities)
            .register_prefix("Opportunity", opportunities.dispatch)
        )
