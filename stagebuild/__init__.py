# stagebuild/__init__.py
"""stagebuild - multi-stage, dependency-ordered build orchestrator."""

__version__ = "1.0.0"
