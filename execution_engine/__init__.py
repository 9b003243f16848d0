"""
Project execution and deployment engine.

Analyzes submitted source projects, builds and runs them inside a
resource-bounded sandbox, and manages long-lived deployed instances.
"""
__version__ = "1.0.0"
