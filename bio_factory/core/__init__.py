"""Core rule engine: event bus, simulation kernel and progression dispatcher."""

from .context import SimulationContext, build_context
from .events import EVENT_PAYLOADS, EventBus, EventPayloadError, Subscription, UnknownEventError
from .kernel import SimulationKernel
from .ledger import ResourceLedger
from .loader import ConfigurationError, ContentBundle, ContentValidationError, load_content
from .models import ProgressionSnapshot, TrackedStats
from .modifiers import ModifierStack
from .persistence import JsonFileStore, MemoryStore, PersistenceError, ProgressionStore
from .progression import ProgressionDispatcher
from .research import ResearchTracker
from .save_system import migrate_snapshot
from .settings import EngineSettings, default_settings, merge_settings

__all__ = [
    "ConfigurationError",
    "ContentBundle",
    "ContentValidationError",
    "EVENT_PAYLOADS",
    "EngineSettings",
    "EventBus",
    "EventPayloadError",
    "JsonFileStore",
    "MemoryStore",
    "ModifierStack",
    "PersistenceError",
    "ProgressionDispatcher",
    "ProgressionSnapshot",
    "ProgressionStore",
    "ResearchTracker",
    "ResourceLedger",
    "SimulationContext",
    "SimulationKernel",
    "Subscription",
    "TrackedStats",
    "UnknownEventError",
    "build_context",
    "default_settings",
    "load_content",
    "merge_settings",
    "migrate_snapshot",
]
