"""Project structure analysis."""
from execution_engine.services.analysis.project_analyzer import ProjectStructureAnalyzer

__all__ = ["ProjectStructureAnalyzer"]
