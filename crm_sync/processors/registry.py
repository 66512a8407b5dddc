"""
Processor Registry

Queue type -> processor instance, plus the combined table of every exact
event type the processors understand.
"""
from typing import Dict, FrozenSet, Iterable, Optional

from crm_sync.errors import ProcessorNotFound
from crm_sync.models.queue import QueueType
from crm_sync.processors.appointments import AppointmentsProcessor
from crm_sync.processors.base import BaseProcessor, ProcessorDeps
from crm_sync.processors.contacts import ContactsProcessor
from crm_sync.processors.critical import CriticalProcessor
from crm_sync.processors.financial import FinancialProcessor
from crm_sync.processors.general import GeneralProcessor
from crm_sync.processors.install import InstallProcessor
from crm_sync.processors.messages import MessagesProcessor
from crm_sync.processors.projects import ProjectsProcessor

DEFAULT_PROCESSORS = (
    CriticalProcessor,
    FinancialProcessor,
    GeneralProcessor,
    MessagesProcessor,
    AppointmentsProcessor,
    ContactsProcessor,
    ProjectsProcessor,
    InstallProcessor,
)


class ProcessorRegistry:

    def __init__(self, processors: Optional[Iterable[BaseProcessor]] = None):
        self._processors: Dict[QueueType, BaseProcessor] = {}
        for processor in processors or ():
            self.register(processor)

    def register(self, processor: BaseProcessor) -> None:
        self._processors[processor.queue_type] = processor

    def get(self, queue_type: QueueType) -> BaseProcessor:
        """
        Raises:
            ProcessorNotFound: nothing registered for `queue_type`
        """
        processor = self._processors.get(queue_type)
        if processor is None:
            raise ProcessorNotFound(f"No processor registered for queue type '{queue_type}'")
        return processor

    def __contains__(self, queue_type: QueueType) -> bool:
        return queue_type in self._processors

    @property
    def queue_types(self) -> FrozenSet[QueueType]:
        return frozenset(self._processors)

    def dispatch_table(self) -> Dict[str, QueueType]:
        """Exact event type -> the queue whose processor handles it."""
        table: Dict[str, QueueType] = {}
        for queue_type, processor in self._processors.items():
            for event_type in processor.registry.event_types:
                table.setdefault(event_type, queue_type)
        return table


def build_default_registry(deps: ProcessorDeps) -> ProcessorRegistry:
    return ProcessorRegistry(cls(deps) for cls in DEFAULT_PROCESSORS)
