"""
cogworks — stateless pipeline execution engine

File: src/cogworks/__init__.py

Purpose
- Package root. Each invocation advances one work item's pipeline run by
  reconstructing state from artifacts held by an external artifact store.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
