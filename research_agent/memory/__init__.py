"""
Memory subsystem.

This package provides:
- Session lifecycle tracking
- Episodic, semantic and procedural memory managers
- A coordinator that builds token-budgeted context across them
- The reflection engine that assesses progress from stored memory
"""

from .episodic_manager import EpisodeConsolidator, EpisodicContext, EpisodicManager, NoOpConsolidator
from .memory_system import ExperienceResult, MaintenanceReport, MemoryContext, MemorySystem
from .procedural_manager import ProceduralManager, StrategyRecommendation
from .reflection_engine import ReflectionEngine
from .semantic_manager import KnowledgeContext, SemanticManager
from .session_manager import SessionManager

__all__ = [
    # Managers
    "SessionManager",
    "EpisodicManager",
    "SemanticManager",
    "ProceduralManager",
    # Coordination
    "MemorySystem",
    "MemoryContext",
    "ExperienceResult",
    "MaintenanceReport",
    # Context results
    "EpisodicContext",
    "KnowledgeContext",
    "StrategyRecommendation",
    # Consolidation
    "EpisodeConsolidator",
    "NoOpConsolidator",
    # Reflection
    "ReflectionEngine",
]
