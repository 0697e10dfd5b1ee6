"""Disperse asset finalization engine.

This package takes the assets of a web build (HTML, CSS, JavaScript and images),
runs them through chains of external transformers, writes the finished files to
disk and disperses them to cloud storage providers.

The main entry point is the FileManager in file_manager.py, which drives every
asset through the pipeline and fires a single finalize step once the async task
barrier drains. The CLI module wraps it for use from the command line.

Architecture:
- Leaf components (PermissionGate, SourceMapChain, AsyncTaskBarrier) carry no
  dependencies on the rest of the package.
- Transformers, image commands and cloud providers are looked up through
  registries so new ones can be added without touching the orchestrator.
"""

__all__ = ["__version__"]
__version__ = "0.3.0"
