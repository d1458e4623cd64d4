"""
stagegate — gated pipeline orchestration engine.

File: src/stagegate/__init__.py

Purpose
- Package root. Runs build/test/scan/deploy pipelines as an ordered stage graph whose
  quality and security stages block on policy verdicts.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules (adapters, engine) are imported by callers, not re-exported here.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
